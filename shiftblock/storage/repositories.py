import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from shiftblock.config.settings import get_settings
from shiftblock.models.entities import (
    DistributionBlock,
    EntityKind,
    PlacementMode,
    Room,
    SchoolClass,
    SchoolSettings,
    SlotState,
    Teacher,
    TimeSlot,
)
from shiftblock.models.snapshot import Snapshot
from shiftblock.storage.database import (
    BlockModel,
    ClassModel,
    RoomModel,
    ScheduleOverrideModel,
    SchoolModel,
    SchoolSlotModel,
    SlotConstraintModel,
    TeacherModel,
    TimetableCellModel,
)


logger = logging.getLogger(__name__)

SCHOOL_ID = 1


class BlockStore:
    """
    Persistence boundary for block placements.

    Writes only stage changes on the session; callers own the transaction
    through begin/commit/rollback.
    """

    def __init__(self, db: Session):
        self.db = db

    def begin(self) -> None:
        if not self.db.in_transaction():
            self.db.begin()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def get_block(self, block_id: int) -> BlockModel:
        model = self.db.query(BlockModel).filter(BlockModel.id == block_id).first()
        if model is None:
            raise LookupError(f"Block {block_id} not found")
        return model

    def clear_placement(self, block_id: int) -> None:
        model = self.get_block(block_id)
        model.day = 0
        model.hour = 0
        model.placement_type = None
        self.db.query(TimetableCellModel).filter(TimetableCellModel.block_id == block_id).delete()
        self.db.flush()

    def place_block(self, block: DistributionBlock, mode: PlacementMode) -> None:
        model = self.get_block(block.id)
        model.day = block.day
        model.hour = block.hour
        model.placement_type = mode.value
        if mode == PlacementMode.MANUAL:
            model.is_manual = True
        self.db.flush()

    def sync_derived_tables(self) -> int:
        """Rebuild timetable_cells from the placed blocks. Returns the row count."""
        self.db.query(TimetableCellModel).delete()
        rows = []
        placed = self.db.query(BlockModel).filter(BlockModel.day > 0, BlockModel.hour > 0).order_by(BlockModel.id)
        for model in placed:
            owners = [(EntityKind.CLASS, model.class_id)]
            owners.extend((EntityKind.TEACHER, tid) for tid in sorted(model.teacher_ids or []))
            if model.room_id is not None:
                owners.append((EntityKind.ROOM, model.room_id))
            for hour in range(model.hour, model.hour + model.duration):
                for kind, entity_id in owners:
                    rows.append(
                        TimetableCellModel(
                            entity_kind=kind.value,
                            entity_id=entity_id,
                            day=model.day,
                            hour=hour,
                            block_id=model.id,
                            lesson_code=model.lesson_code,
                        )
                    )
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def current_revision(self) -> int:
        school = self.db.get(SchoolModel, SCHOOL_ID)
        return school.revision if school else 0

    def bump_revision(self) -> int:
        school = self.db.get(SchoolModel, SCHOOL_ID)
        if school is None:
            school = SchoolModel(id=SCHOOL_ID, revision=0)
            self.db.add(school)
        school.revision = (school.revision or 0) + 1
        self.db.flush()
        return school.revision


class TimetableRepository:
    def __init__(self, db: Session):
        self.db = db
        self.store = BlockStore(db)

    def import_timetable(
        self,
        school: SchoolSettings,
        teachers: Iterable[Teacher],
        classes: Iterable[SchoolClass],
        rooms: Iterable[Room],
        blocks: Iterable[DistributionBlock],
    ) -> int:
        """Replace the stored timetable. Returns the new revision."""
        try:
            for model in (
                TimetableCellModel,
                BlockModel,
                ScheduleOverrideModel,
                SlotConstraintModel,
                RoomModel,
                ClassModel,
                TeacherModel,
                SchoolSlotModel,
            ):
                self.db.query(model).delete()

            existing = self.db.get(SchoolModel, SCHOOL_ID)
            if existing is None:
                existing = SchoolModel(id=SCHOOL_ID, revision=0)
                self.db.add(existing)
            existing.name = school.name
            existing.max_days = school.max_days
            existing.max_hours = school.max_hours
            for slot, state in sorted(school.default_timetable.items()):
                self.db.add(SchoolSlotModel(day=slot.day, hour=slot.hour, state=state.value))

            for teacher in teachers:
                self.db.add(
                    TeacherModel(
                        id=teacher.id,
                        name=teacher.name,
                        max_hours_per_day=teacher.max_hours_per_day,
                        max_hours_per_week=teacher.max_hours_per_week,
                    )
                )
                self._add_slot_rows(EntityKind.TEACHER, teacher.id, teacher.constraints, teacher.schedule_overrides)
            for cls in classes:
                self.db.add(ClassModel(id=cls.id, name=cls.name))
                self._add_slot_rows(EntityKind.CLASS, cls.id, cls.constraints, cls.schedule_overrides)
            for room in rooms:
                self.db.add(RoomModel(id=room.id, name=room.name))
                self._add_slot_rows(EntityKind.ROOM, room.id, room.constraints, {})

            for block in blocks:
                self.db.add(
                    BlockModel(
                        id=block.id,
                        class_id=block.class_id,
                        lesson_id=block.lesson_id,
                        lesson_code=block.lesson_code,
                        teacher_ids=sorted(block.teacher_ids),
                        room_id=block.room_id,
                        day=block.day,
                        hour=block.hour,
                        duration=block.duration,
                        is_locked=block.is_locked,
                        is_manual=block.is_manual,
                        placement_type=PlacementMode.AUTOMATIC.value if block.is_placed else None,
                    )
                )
            self.db.flush()

            self.store.sync_derived_tables()
            revision = self.store.bump_revision()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Imported timetable at revision {revision}")
        return revision

    def _add_slot_rows(self, kind: EntityKind, entity_id: int, constraints, overrides) -> None:
        for slot, state in sorted(constraints.items()):
            self.db.add(
                SlotConstraintModel(
                    entity_kind=kind.value, entity_id=entity_id, day=slot.day, hour=slot.hour, state=state.value
                )
            )
        for key, note in sorted(overrides.items()):
            self.db.add(ScheduleOverrideModel(entity_kind=kind.value, entity_id=entity_id, cell_key=key, note=note or ""))

    def load_snapshot(self) -> Snapshot:
        """Read the whole timetable into an immutable Snapshot."""
        settings = get_settings()
        school_row: Optional[SchoolModel] = self.db.get(SchoolModel, SCHOOL_ID)

        constraints = {}
        for row in self.db.query(SlotConstraintModel).all():
            constraints.setdefault((row.entity_kind, row.entity_id), {})[TimeSlot(row.day, row.hour)] = SlotState(row.state)
        overrides = {}
        for row in self.db.query(ScheduleOverrideModel).all():
            overrides.setdefault((row.entity_kind, row.entity_id), {})[row.cell_key] = row.note

        def maps(kind: EntityKind, entity_id: int):
            key = (kind.value, entity_id)
            return constraints.get(key, {}), overrides.get(key, {})

        teachers: List[Teacher] = []
        for row in self.db.query(TeacherModel).order_by(TeacherModel.id):
            cons, ovr = maps(EntityKind.TEACHER, row.id)
            teachers.append(
                Teacher(
                    id=row.id,
                    name=row.name or "",
                    constraints=cons,
                    schedule_overrides=ovr,
                    max_hours_per_day=row.max_hours_per_day,
                    max_hours_per_week=row.max_hours_per_week,
                )
            )
        classes = []
        for row in self.db.query(ClassModel).order_by(ClassModel.id):
            cons, ovr = maps(EntityKind.CLASS, row.id)
            classes.append(SchoolClass(id=row.id, name=row.name or "", constraints=cons, schedule_overrides=ovr))
        rooms = [
            Room(id=row.id, name=row.name or "", constraints=maps(EntityKind.ROOM, row.id)[0])
            for row in self.db.query(RoomModel).order_by(RoomModel.id)
        ]

        school = SchoolSettings(
            max_days=(school_row.max_days if school_row and school_row.max_days else settings.default_max_days),
            max_hours=(school_row.max_hours if school_row and school_row.max_hours else settings.default_max_hours),
            default_timetable={
                TimeSlot(row.day, row.hour): SlotState(row.state) for row in self.db.query(SchoolSlotModel).all()
            },
            name=(school_row.name or "") if school_row else "",
        )

        blocks = [self._model_to_block(m) for m in self.db.query(BlockModel).order_by(BlockModel.id)]
        return Snapshot.build(
            blocks, teachers, classes, rooms, school=school, revision=school_row.revision if school_row else 0
        )

    @staticmethod
    def _model_to_block(model: BlockModel) -> DistributionBlock:
        return DistributionBlock(
            id=model.id,
            class_id=model.class_id,
            lesson_id=model.lesson_id,
            lesson_code=model.lesson_code or "",
            teacher_ids=frozenset(model.teacher_ids or []),
            duration=model.duration,
            day=model.day,
            hour=model.hour,
            room_id=model.room_id,
            is_locked=bool(model.is_locked),
            is_manual=bool(model.is_manual),
        )
