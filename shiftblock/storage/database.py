from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from shiftblock.config.settings import get_settings

settings = get_settings()


def make_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory SQLite lives in one connection; share it across threads.
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, pool_pre_ping=True, echo=False)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class SchoolModel(Base):
    __tablename__ = "school"

    id = Column(Integer, primary_key=True)
    name = Column(String, default="")
    max_days = Column(Integer, nullable=True)
    max_hours = Column(Integer, nullable=True)
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SchoolSlotModel(Base):
    __tablename__ = "school_slots"
    __table_args__ = (UniqueConstraint("day", "hour"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(Integer, nullable=False)
    hour = Column(Integer, nullable=False)
    state = Column(String, nullable=False)  # "open" | "closed"


class TeacherModel(Base):
    __tablename__ = "teachers"

    id = Column(Integer, primary_key=True)
    name = Column(String, default="")
    max_hours_per_day = Column(Integer, nullable=True)
    max_hours_per_week = Column(Integer, nullable=True)


class ClassModel(Base):
    __tablename__ = "classes"

    id = Column(Integer, primary_key=True)
    name = Column(String, default="")


class RoomModel(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True)
    name = Column(String, default="")


class SlotConstraintModel(Base):
    __tablename__ = "slot_constraints"
    __table_args__ = (UniqueConstraint("entity_kind", "entity_id", "day", "hour"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_kind = Column(String, nullable=False)  # "teacher" | "class" | "room"
    entity_id = Column(Integer, nullable=False)
    day = Column(Integer, nullable=False)
    hour = Column(Integer, nullable=False)
    state = Column(String, nullable=False)


class ScheduleOverrideModel(Base):
    __tablename__ = "schedule_overrides"
    __table_args__ = (UniqueConstraint("entity_kind", "entity_id", "cell_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_kind = Column(String, nullable=False)  # "teacher" | "class"
    entity_id = Column(Integer, nullable=False)
    cell_key = Column(String, nullable=False)  # "day_hour"
    note = Column(String, nullable=False, default="")


class BlockModel(Base):
    __tablename__ = "blocks"

    id = Column(Integer, primary_key=True)
    class_id = Column(Integer, nullable=False)
    lesson_id = Column(Integer, nullable=False)
    lesson_code = Column(String, nullable=False, default="")
    teacher_ids = Column(JSON, nullable=False)  # List[int]
    room_id = Column(Integer, nullable=True)
    day = Column(Integer, nullable=False, default=0)
    hour = Column(Integer, nullable=False, default=0)
    duration = Column(Integer, nullable=False, default=1)
    is_locked = Column(Boolean, nullable=False, default=False)
    is_manual = Column(Boolean, nullable=False, default=False)
    placement_type = Column(String, nullable=True)  # "automatic" | "manual"
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TimetableCellModel(Base):
    """Derived per-(entity, day, hour) occupancy, rebuilt from `blocks`."""

    __tablename__ = "timetable_cells"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_kind = Column(String, nullable=False)
    entity_id = Column(Integer, nullable=False)
    day = Column(Integer, nullable=False)
    hour = Column(Integer, nullable=False)
    block_id = Column(Integer, nullable=False)
    lesson_code = Column(String, default="")


def init_db():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
