"""
Example: Planning and committing a block move

This example builds a small timetable in memory, asks the cascade search to
move one block onto an occupied slot, shows the displaced blocks, and then
commits the plan to a throwaway SQLite database.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shiftblock.engine.availability import find_violations
from shiftblock.engine.edit import plan_move
from shiftblock.models.entities import DistributionBlock, SchoolClass, SchoolSettings, Teacher
from shiftblock.storage.applier import apply_changes
from shiftblock.storage.database import Base
from shiftblock.storage.repositories import BlockStore, TimetableRepository


def block(id, class_id, teacher_id, day, hour, code):
    return DistributionBlock(
        id=id,
        class_id=class_id,
        lesson_id=id,
        lesson_code=code,
        teacher_ids=frozenset({teacher_id}),
        day=day,
        hour=hour,
    )


# 1. A two-day, two-hour week with three classes
school = SchoolSettings(max_days=2, max_hours=2, name="Example School")
teachers = [Teacher(id=i, name=name) for i, name in enumerate(["Ayse", "Mehmet", "Deniz"], start=1)]
classes = [SchoolClass(id=1, name="9A"), SchoolClass(id=2, name="9B"), SchoolClass(id=3, name="10A")]
blocks = [
    block(1, 1, 1, 1, 1, "MAT"),
    block(2, 1, 2, 2, 2, "PHY"),
    block(3, 2, 2, 1, 1, "PHY"),
    block(4, 1, 3, 1, 2, "CHE"),
    block(5, 3, 2, 2, 1, "PHY"),
]

# 2. Persist it and take a snapshot
engine = create_engine("sqlite://")
Base.metadata.create_all(bind=engine)
db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
repo = TimetableRepository(db)
repo.import_timetable(school, teachers, classes, [], blocks)
snapshot = repo.load_snapshot()

# 3. Plan: move MAT 9A to Tuesday hour 2, which 9A's PHY occupies
result, engine_used = plan_move(snapshot, block_id=1, target_day=2, target_hour=2)
print(f"[{engine_used}] {result.message}")
for change in result.changes:
    print(f"  {change.description}")

# 4. Commit against the revision the plan was computed on
if result.success:
    assert find_violations(snapshot.with_changes(result.changes)) == []
    revision = apply_changes(result.changes, BlockStore(db), expected_revision=snapshot.revision)
    print(f"Committed, timetable now at revision {revision}")
