import os

# Settings are read once at import; point the app at an in-memory database first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CACHE_BACKEND"] = "memory"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shiftblock.models.entities import DistributionBlock, SchoolClass, SchoolSettings, SlotState, Teacher, TimeSlot
from shiftblock.models.snapshot import Snapshot
from shiftblock.storage.database import Base


@pytest.fixture
def make_block():
    """Factory for placed blocks; teacher 1 and class 1 unless told otherwise."""
    def _make(id, class_id=1, teachers=(1,), day=1, hour=1, duration=1, room_id=None, locked=False, lesson_id=None):
        lesson_id = lesson_id if lesson_id is not None else id
        return DistributionBlock(
            id=id,
            class_id=class_id,
            lesson_id=lesson_id,
            lesson_code=f"L{lesson_id}",
            teacher_ids=frozenset(teachers),
            duration=duration,
            day=day,
            hour=hour,
            room_id=room_id,
            is_locked=locked,
        )
    return _make


@pytest.fixture
def teachers():
    """Five teachers with no constraints."""
    return [Teacher(id=i, name=f"Teacher {i}") for i in range(1, 6)]


@pytest.fixture
def classes():
    """Three classes with no constraints."""
    return [SchoolClass(id=1, name="9A"), SchoolClass(id=2, name="9B"), SchoolClass(id=3, name="10A")]


@pytest.fixture
def scenario_single(make_block, teachers, classes):
    """One two-hour block on Monday 1-2 in an otherwise empty week."""
    return Snapshot.build([make_block(1, duration=2)], teachers, classes)


@pytest.fixture
def scenario_one_alternative(make_block, classes):
    """
    Two days of two hours. Block 3 shares class 1 with block 1 and its teacher
    is closed everywhere except (1,1) and (2,1).
    """
    t2 = Teacher(
        id=2,
        name="Teacher 2",
        constraints={TimeSlot(1, 2): SlotState.CLOSED, TimeSlot(2, 2): SlotState.CLOSED},
    )
    blocks = [
        make_block(1, teachers=(1,), day=1, hour=1),
        make_block(3, teachers=(2,), day=2, hour=1),
    ]
    return Snapshot.build(blocks, [Teacher(id=1, name="Teacher 1"), t2], classes, school=SchoolSettings(max_days=2, max_hours=2))


@pytest.fixture
def scenario_two_level(make_block, teachers, classes):
    """
    Moving block 1 to (2,2) displaces block 2, which displaces block 3, which
    then finds a free window.
    """
    blocks = [
        make_block(1, class_id=1, teachers=(1,), day=1, hour=1),
        make_block(2, class_id=1, teachers=(2,), day=2, hour=2),
        make_block(3, class_id=2, teachers=(2,), day=1, hour=1),
        make_block(4, class_id=1, teachers=(3,), day=1, hour=2),
        make_block(5, class_id=3, teachers=(2,), day=2, hour=1),
    ]
    return Snapshot.build(blocks, teachers, classes, school=SchoolSettings(max_days=2, max_hours=2))


@pytest.fixture
def scenario_dead_end(make_block, teachers, classes):
    """
    One day of three hours. Moving block 1 to hour 3 displaces block 3, and
    class 2 has no hour left for it without using the requested window.
    """
    blocks = [
        make_block(1, class_id=1, teachers=(1,), day=1, hour=1),
        make_block(3, class_id=2, teachers=(1,), day=1, hour=3),
        make_block(4, class_id=2, teachers=(4,), day=1, hour=1),
        make_block(5, class_id=2, teachers=(5,), day=1, hour=2),
    ]
    return Snapshot.build(blocks, teachers, classes, school=SchoolSettings(max_days=1, max_hours=3))


@pytest.fixture
def db_session():
    """Isolated in-memory database session."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
