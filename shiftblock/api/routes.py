from contextlib import contextmanager
from dataclasses import asdict
from typing import Dict, List, Optional
import logging
import re
import threading

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field, field_validator, model_validator

from shiftblock.config.settings import get_settings
from shiftblock.engine.edit import plan_move
from shiftblock.graph.dependency_graph import analyze
from shiftblock.models.entities import (
    BlockChange,
    DistributionBlock,
    FailureKind,
    MoveResult,
    Room,
    SchoolClass,
    SchoolSettings,
    SlotState,
    Teacher,
    TimeSlot,
)
from shiftblock.utils.benchmarking import benchmark_editors
from shiftblock.utils.validation import validate
from shiftblock.storage.applier import ChangeSetViolationError, PersistenceError, StaleSnapshotError, apply_changes
from shiftblock.storage.cache import MoveCache, decode_result, encode_result
from shiftblock.storage.database import get_db
from shiftblock.storage.repositories import BlockStore, TimetableRepository
from sqlalchemy.orm import Session

router = APIRouter()
cache = MoveCache()
settings = get_settings()
logger = logging.getLogger(__name__)

_CELL_KEY = re.compile(r"^\d+_\d+$")
_edit_lock = threading.Lock()


@contextmanager
def exclusive_edit():
    """Allow one preview, apply or benchmark at a time; a concurrent caller gets 409."""
    if not _edit_lock.acquire(blocking=False):
        logger.warning("Edit rejected: another edit is in progress")
        raise HTTPException(status_code=409, detail="Another timetable edit is in progress")
    try:
        yield
    finally:
        _edit_lock.release()


class SlotDTO(BaseModel):
    day: int = Field(..., ge=1)
    hour: int = Field(..., ge=1)
    state: SlotState = SlotState.CLOSED


def _slot_map(slots: List[SlotDTO]) -> Dict[TimeSlot, SlotState]:
    return {TimeSlot(s.day, s.hour): s.state for s in slots}


def _check_cell_keys(v: Dict[str, str]) -> Dict[str, str]:
    for key in v:
        if not _CELL_KEY.match(key):
            raise ValueError(f"schedule override keys must look like 'day_hour', got '{key}'")
    return v


class SchoolDTO(BaseModel):
    name: str = ""
    max_days: int = Field(5, ge=1, le=7)
    max_hours: int = Field(8, ge=1, le=12)
    default_timetable: List[SlotDTO] = []

    def to_domain(self) -> SchoolSettings:
        return SchoolSettings(
            max_days=self.max_days,
            max_hours=self.max_hours,
            default_timetable=_slot_map(self.default_timetable),
            name=self.name,
        )


class TeacherDTO(BaseModel):
    id: int
    name: str = ""
    constraints: List[SlotDTO] = []
    schedule_overrides: Dict[str, str] = {}
    max_hours_per_day: Optional[int] = Field(None, ge=1)
    max_hours_per_week: Optional[int] = Field(None, ge=1)

    @field_validator("schedule_overrides")
    @classmethod
    def validate_overrides(cls, v: Dict[str, str]):
        """Override keys address one cell as "day_hour"."""
        return _check_cell_keys(v)

    def to_domain(self) -> Teacher:
        return Teacher(
            id=self.id,
            name=self.name,
            constraints=_slot_map(self.constraints),
            schedule_overrides=dict(self.schedule_overrides),
            max_hours_per_day=self.max_hours_per_day,
            max_hours_per_week=self.max_hours_per_week,
        )


class ClassDTO(BaseModel):
    id: int
    name: str = ""
    constraints: List[SlotDTO] = []
    schedule_overrides: Dict[str, str] = {}

    @field_validator("schedule_overrides")
    @classmethod
    def validate_overrides(cls, v: Dict[str, str]):
        return _check_cell_keys(v)

    def to_domain(self) -> SchoolClass:
        return SchoolClass(
            id=self.id,
            name=self.name,
            constraints=_slot_map(self.constraints),
            schedule_overrides=dict(self.schedule_overrides),
        )


class RoomDTO(BaseModel):
    id: int
    name: str = ""
    constraints: List[SlotDTO] = []

    def to_domain(self) -> Room:
        return Room(id=self.id, name=self.name, constraints=_slot_map(self.constraints))


class BlockDTO(BaseModel):
    id: int
    class_id: int
    lesson_id: int
    lesson_code: str = ""
    teacher_ids: List[int] = Field(..., min_length=1)
    room_id: Optional[int] = None
    day: int = Field(0, ge=0)
    hour: int = Field(0, ge=0)
    duration: int = Field(1, ge=1)
    is_locked: bool = False
    is_manual: bool = False

    @model_validator(mode="after")
    def validate_placement(self):
        """A block is either placed (day and hour set) or unplaced (both 0)."""
        if (self.day == 0) != (self.hour == 0):
            raise ValueError("day and hour must both be 0 (unplaced) or both be >= 1")
        return self

    def to_domain(self) -> DistributionBlock:
        return DistributionBlock(
            id=self.id,
            class_id=self.class_id,
            lesson_id=self.lesson_id,
            lesson_code=self.lesson_code,
            teacher_ids=frozenset(self.teacher_ids),
            duration=self.duration,
            day=self.day,
            hour=self.hour,
            room_id=self.room_id,
            is_locked=self.is_locked,
            is_manual=self.is_manual,
        )

    @classmethod
    def from_domain(cls, b: DistributionBlock) -> "BlockDTO":
        return cls(
            id=b.id,
            class_id=b.class_id,
            lesson_id=b.lesson_id,
            lesson_code=b.lesson_code,
            teacher_ids=sorted(b.teacher_ids),
            room_id=b.room_id,
            day=b.day,
            hour=b.hour,
            duration=b.duration,
            is_locked=b.is_locked,
            is_manual=b.is_manual,
        )


class ImportRequest(BaseModel):
    school: SchoolDTO = SchoolDTO()
    teachers: List[TeacherDTO] = []
    classes: List[ClassDTO] = []
    rooms: List[RoomDTO] = []
    blocks: List[BlockDTO] = []


class ImportResponse(BaseModel):
    revision: int
    blocks: int


class SnapshotResponse(BaseModel):
    revision: int
    fingerprint: str
    blocks: List[BlockDTO]


class MoveRequest(BaseModel):
    block_id: int
    day: int
    hour: int


class ChangeDTO(BaseModel):
    block_id: int
    old_day: int = 0
    old_hour: int = 0
    new_day: int = Field(..., ge=1)
    new_hour: int = Field(..., ge=1)
    description: str = ""

    def to_domain(self) -> BlockChange:
        return BlockChange(**self.model_dump())

    @classmethod
    def from_domain(cls, c: BlockChange) -> "ChangeDTO":
        return cls(**asdict(c))


class MoveResponse(BaseModel):
    success: bool
    message: str
    failure: Optional[FailureKind] = None
    changes: List[ChangeDTO]
    revision: int
    engine_used: str
    cached: bool = False


class ApplyRequest(BaseModel):
    revision: int
    changes: List[ChangeDTO] = Field(..., min_length=1)


class ApplyResponse(BaseModel):
    revision: int
    applied: int


class BenchmarkEntry(BaseModel):
    engine_name: str
    time_seconds: float
    blocks_moved: int
    success: bool
    message: str


class BenchmarkResponse(BaseModel):
    results: List[BenchmarkEntry]
    num_blocks: int


class ValidationResponse(BaseModel):
    assignment_completeness: float
    teacher_availability: float
    resource_balance: float
    schedule_feasibility: float
    can_proceed: bool
    assignment_issues: List[str]
    teacher_issues: List[str]
    resource_issues: List[str]
    schedule_issues: List[str]
    critical_conflicts: List[str]
    heatmap: Dict[int, Dict[int, str]]
    total_hours: int
    placed_hours: int


class NodeDTO(BaseModel):
    id: str
    label: str
    stress: float
    lesson_count: int
    class_count: int
    room_count: int
    relation_count: int


class EdgeDTO(BaseModel):
    source: str
    target: str
    weight: float
    label: str
    type: str


class DependencyResponse(BaseModel):
    nodes: List[NodeDTO]
    edges: List[EdgeDTO]
    overall_strain: float


def _raise_for_failure(result: MoveResult) -> None:
    status = 400 if result.failure == FailureKind.INVALID_REQUEST else 422
    raise HTTPException(status_code=status, detail={"failure": result.failure.value, "message": result.message})


@router.post("/timetable/import", response_model=ImportResponse, summary="Import a timetable")
def import_timetable(req: ImportRequest, db: Session = Depends(get_db)):
    """
    Replace the stored timetable with the given school, entities and blocks.

    **Error Handling:**
    - 400: A block references an unknown class, teacher or room
    - 422: Malformed payload (pydantic validation)
    """
    logger.info(f"Import request: {len(req.teachers)} teachers, {len(req.classes)} classes, {len(req.blocks)} blocks")

    teacher_ids = {t.id for t in req.teachers}
    class_ids = {c.id for c in req.classes}
    room_ids = {r.id for r in req.rooms}
    for block in req.blocks:
        if block.class_id not in class_ids:
            raise HTTPException(status_code=400, detail=f"Block {block.id} references unknown class {block.class_id}")
        missing = set(block.teacher_ids) - teacher_ids
        if missing:
            raise HTTPException(status_code=400, detail=f"Block {block.id} references unknown teacher(s) {sorted(missing)}")
        if block.room_id is not None and block.room_id not in room_ids:
            raise HTTPException(status_code=400, detail=f"Block {block.id} references unknown room {block.room_id}")

    with exclusive_edit():
        revision = TimetableRepository(db).import_timetable(
            school=req.school.to_domain(),
            teachers=[t.to_domain() for t in req.teachers],
            classes=[c.to_domain() for c in req.classes],
            rooms=[r.to_domain() for r in req.rooms],
            blocks=[b.to_domain() for b in req.blocks],
        )
        cache.invalidate_all()
    return {"revision": revision, "blocks": len(req.blocks)}


@router.get("/timetable/snapshot", response_model=SnapshotResponse, summary="Current placed blocks")
def get_snapshot(db: Session = Depends(get_db)):
    snapshot = TimetableRepository(db).load_snapshot()
    blocks = sorted(snapshot.placed_blocks(), key=lambda b: b.id)
    return {
        "revision": snapshot.revision,
        "fingerprint": snapshot.fingerprint(),
        "blocks": [BlockDTO.from_domain(b) for b in blocks],
    }


@router.post("/timetable/moves/preview", response_model=MoveResponse, summary="Plan a block move")
def preview_move(
    req: MoveRequest,
    db: Session = Depends(get_db),
    engine: Optional[str] = Query(None, pattern="^(auto|cascade|cpsat)$", description="Engine: auto, cascade, or cpsat"),
):
    """
    Plan moving one placed block to (day, hour) without writing anything.

    **Algorithm**:
    1. Load a fresh snapshot of the stored timetable
    2. Check the cache for the same snapshot fingerprint and request
    3. Run the cascade search (or CP-SAT) and cache the plan

    **Error Handling:**
    - 404: Unknown block
    - 400: Invalid request (block not placed, target out of range)
    - 409: Another edit is in progress
    - 422: Locked block, closed slot, or no arrangement within the search limits

    **Returns:**
    - `changes`: Source block first, then every displaced block
    - `revision`: Revision the plan was computed against; pass it back to apply
    """
    logger.info(f"Preview request: block {req.block_id} -> ({req.day}, {req.hour}), engine={engine}")

    with exclusive_edit():
        snapshot = TimetableRepository(db).load_snapshot()
        if req.block_id not in snapshot.blocks:
            raise HTTPException(status_code=404, detail=f"Block {req.block_id} not found")

        engine_name = engine or settings.edit_engine
        key = MoveCache.move_key(snapshot.fingerprint(), req.block_id, req.day, req.hour, engine_name)
        cached_plan = cache.get(key)
        if cached_plan:
            logger.info("Cache hit")
            result, engine_used = decode_result(cached_plan)
        else:
            result, engine_used = plan_move(snapshot, req.block_id, req.day, req.hour, engine=engine)
            cache.set(key, encode_result(result, engine_used))

    if not result.success:
        logger.warning(f"Move not possible: {result.message}")
        _raise_for_failure(result)

    logger.info(f"Move planned: {len(result.changes)} change(s) by {engine_used}")
    return {
        "success": result.success,
        "message": result.message,
        "failure": result.failure,
        "changes": [ChangeDTO.from_domain(c) for c in result.changes],
        "revision": snapshot.revision,
        "engine_used": engine_used,
        "cached": bool(cached_plan),
    }


@router.post("/timetable/moves/apply", response_model=ApplyResponse, summary="Commit a planned move")
def apply_move(req: ApplyRequest, db: Session = Depends(get_db)):
    """
    Commit a previewed change-set in one transaction.

    **Error Handling:**
    - 409: The plan was computed against an older revision, or another edit is in progress
    - 422: The change-set would double-book a resource or use a closed slot
    - 500: The transaction failed and was rolled back
    """
    logger.info(f"Apply request: {len(req.changes)} change(s) at revision {req.revision}")

    with exclusive_edit():
        try:
            revision = apply_changes(
                [c.to_domain() for c in req.changes], BlockStore(db), expected_revision=req.revision
            )
        except StaleSnapshotError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ChangeSetViolationError as e:
            raise HTTPException(status_code=422, detail={"message": str(e), "violations": e.violations})
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=str(e))
        cache.invalidate_all()

    return {"revision": revision, "applied": len(req.changes)}


@router.post("/timetable/moves/benchmark", response_model=BenchmarkResponse, summary="Benchmark move engines")
def benchmark(req: MoveRequest, db: Session = Depends(get_db)):
    """
    Compare the cascade search and CP-SAT on the same move request.

    **Returns:**
    - Timing, moved-block count and success for each engine

    **Error Handling:**
    - 409: Another edit is in progress
    """
    logger.info(f"Benchmark request: block {req.block_id} -> ({req.day}, {req.hour})")

    with exclusive_edit():
        snapshot = TimetableRepository(db).load_snapshot()
        if req.block_id not in snapshot.blocks:
            raise HTTPException(status_code=404, detail=f"Block {req.block_id} not found")
        results = benchmark_editors(snapshot, req.block_id, req.day, req.hour)

    logger.info(f"Benchmark complete: {len(results)} engines compared")

    return {
        "results": [BenchmarkEntry(**asdict(r)) for r in results],
        "num_blocks": len(snapshot.blocks),
    }


@router.get("/timetable/validation", response_model=ValidationResponse, summary="Validate the timetable")
def validation_report(db: Session = Depends(get_db)):
    report = validate(TimetableRepository(db).load_snapshot())
    return {**asdict(report), "can_proceed": report.can_proceed}


@router.get("/timetable/dependencies", response_model=DependencyResponse, summary="Teacher dependency analysis")
def dependencies(db: Session = Depends(get_db)):
    return asdict(analyze(TimetableRepository(db).load_snapshot()))
