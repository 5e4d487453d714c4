"""
Constraint model and availability evaluation.

A slot's effective state is resolved in layers:
1. School default timetable: Closed here is final for every block.
2. Entity constraint map (teacher, class, room): Closed closes the slot.
3. Entity schedule override (teachers and classes only), keyed "day_hour":
   consulted only for a slot closed by layer 2. A non-empty note re-opens
   it; an empty note or the CLOSED marker leaves it closed. An override
   never closes an open slot.

Everything here is a pure query over a Snapshot, optionally combined with a
Placement, the working copy of block windows that the move engines edit.
"""

from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from shiftblock.models.entities import (
    CLOSED_MARKER,
    DistributionBlock,
    EntityKind,
    SlotState,
    TimeSlot,
)
from shiftblock.models.snapshot import Snapshot


def windows_overlap(hour_a: int, dur_a: int, hour_b: int, dur_b: int) -> bool:
    """Check if two same-day hour ranges [hour, hour + duration) intersect."""
    return hour_a < hour_b + dur_b and hour_b < hour_a + dur_a


def shares_resource(a: DistributionBlock, b: DistributionBlock) -> bool:
    """Two blocks compete if they share a teacher, the class, or a room."""
    if a.class_id == b.class_id:
        return True
    if a.teacher_ids & b.teacher_ids:
        return True
    return a.room_id is not None and a.room_id == b.room_id


def _reopened(overrides: Dict[str, str], slot: TimeSlot) -> bool:
    note = (overrides.get(slot.cell_key) or "").strip()
    return bool(note) and note.upper() != CLOSED_MARKER


def is_slot_available(snapshot: Snapshot, kind: EntityKind, entity_id: int, slot: TimeSlot) -> bool:
    """
    Resolve the effective state of one slot for one entity.

    Unknown entities carry no constraints, so only the school layer applies.
    """
    if snapshot.school.default_timetable.get(slot) == SlotState.CLOSED:
        return False
    if kind == EntityKind.SCHOOL:
        return True

    if kind == EntityKind.ROOM:
        room = snapshot.rooms.get(entity_id)
        return room is None or room.constraints.get(slot) != SlotState.CLOSED

    entity = snapshot.teachers.get(entity_id) if kind == EntityKind.TEACHER else snapshot.classes.get(entity_id)
    if entity is None:
        return True
    if entity.constraints.get(slot) != SlotState.CLOSED:
        return True
    return _reopened(entity.schedule_overrides, slot)


def closed_reason(snapshot: Snapshot, block: DistributionBlock, day: int, hour: int) -> Optional[str]:
    """Name the first entity that closes any hour of the block's window, or None."""
    for h in block.hours(hour):
        slot = TimeSlot(day, h)
        if not is_slot_available(snapshot, EntityKind.SCHOOL, 0, slot):
            return f"school timetable is closed at {slot.label()}"
        for tid in sorted(block.teacher_ids):
            if not is_slot_available(snapshot, EntityKind.TEACHER, tid, slot):
                teacher = snapshot.teachers.get(tid)
                return f"teacher {teacher.name or tid} is unavailable at {slot.label()}"
        if not is_slot_available(snapshot, EntityKind.CLASS, block.class_id, slot):
            cls = snapshot.classes.get(block.class_id)
            return f"class {cls.name or block.class_id} is closed at {slot.label()}"
        if block.room_id is not None and not is_slot_available(snapshot, EntityKind.ROOM, block.room_id, slot):
            room = snapshot.rooms.get(block.room_id)
            return f"room {room.name or block.room_id} is closed at {slot.label()}"
    return None


def out_of_bounds(snapshot: Snapshot, block: DistributionBlock, day: int, hour: int) -> Optional[str]:
    max_days = snapshot.school.max_days
    max_hours = snapshot.school.effective_max_hours
    if not 1 <= day <= max_days:
        return f"day {day} is outside 1..{max_days}"
    if not 1 <= hour <= max_hours:
        return f"hour {hour} is outside 1..{max_hours}"
    last = hour + block.duration - 1
    if last > max_hours:
        return f"block runs past the end of the day (hour {last} > {max_hours})"
    return None


class Placement:
    """
    Working copy of block windows over a snapshot, indexed by day.

    Lifted blocks are kept out of every collision and cap computation until
    they are placed again.
    """

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot
        self._windows: Dict[int, Tuple[int, int]] = {}
        self._by_day: Dict[int, Set[int]] = defaultdict(set)
        for block in snapshot.placed_blocks():
            self.place(block.id, block.day, block.hour)

    def window(self, block_id: int) -> Optional[Tuple[int, int]]:
        return self._windows.get(block_id)

    def place(self, block_id: int, day: int, hour: int) -> None:
        self.lift(block_id)
        self._windows[block_id] = (day, hour)
        self._by_day[day].add(block_id)

    def lift(self, block_id: int) -> None:
        current = self._windows.pop(block_id, None)
        if current is not None:
            self._by_day[current[0]].discard(block_id)

    def items(self) -> List[Tuple[int, Tuple[int, int]]]:
        return sorted(self._windows.items())

    def colliding(self, block: DistributionBlock, day: int, hour: int) -> List[int]:
        """Ids of placed blocks that overlap the window and share a resource with `block`."""
        hits = []
        for other_id in sorted(self._by_day.get(day, ())):
            if other_id == block.id:
                continue
            other = self.snapshot.blocks[other_id]
            _, other_hour = self._windows[other_id]
            if windows_overlap(hour, block.duration, other_hour, other.duration) and shares_resource(block, other):
                hits.append(other_id)
        return hits

    def teacher_hours(self, teacher_id: int, day: Optional[int] = None, exclude: Set[int] = frozenset()) -> int:
        total = 0
        days = [day] if day is not None else list(self._by_day)
        for d in days:
            for bid in self._by_day.get(d, ()):
                if bid in exclude:
                    continue
                other = self.snapshot.blocks[bid]
                if teacher_id in other.teacher_ids:
                    total += other.duration
        return total


def cap_violation(placement: Placement, block: DistributionBlock, day: int, exclude: Set[int] = frozenset()) -> Optional[str]:
    """Check teacher daily and weekly hour caps as if `block` sat on `day`."""
    skip = set(exclude) | {block.id}
    for tid in sorted(block.teacher_ids):
        teacher = placement.snapshot.teachers.get(tid)
        if teacher is None:
            continue
        if teacher.max_hours_per_day is not None:
            load = placement.teacher_hours(tid, day, skip) + block.duration
            if load > teacher.max_hours_per_day:
                return f"teacher {teacher.name or tid} would teach {load}h on day {day} (max {teacher.max_hours_per_day})"
        if teacher.max_hours_per_week is not None:
            load = placement.teacher_hours(tid, None, skip) + block.duration
            if load > teacher.max_hours_per_week:
                return f"teacher {teacher.name or tid} would teach {load}h this week (max {teacher.max_hours_per_week})"
    return None


def can_place_block(
    block: DistributionBlock,
    day: int,
    hour: int,
    snapshot: Snapshot,
    placement: Optional[Placement] = None,
) -> Tuple[bool, str]:
    """
    Decide whether `block` may occupy [hour, hour + duration) on `day`.

    Checks bounds, effective slot state for the school, every teacher, the
    class and the room, collisions with other placed blocks (the block's own
    current window never collides with itself), and teacher hour caps.
    Returns (ok, reason); reason is empty when ok.
    """
    placement = placement or Placement(snapshot)

    reason = out_of_bounds(snapshot, block, day, hour)
    if reason:
        return False, reason

    reason = closed_reason(snapshot, block, day, hour)
    if reason:
        return False, reason

    hits = placement.colliding(block, day, hour)
    if hits:
        return False, f"overlaps block {hits[0]}"

    reason = cap_violation(placement, block, day)
    if reason:
        return False, reason

    return True, ""


def find_violations(snapshot: Snapshot) -> List[str]:
    """List every broken placement invariant: bounds, closed slots, double bookings."""
    issues: List[str] = []
    placed = sorted(snapshot.placed_blocks(), key=lambda b: b.id)

    for block in placed:
        if block.duration < 1:
            issues.append(f"block {block.id} has duration {block.duration}")
            continue
        reason = out_of_bounds(snapshot, block, block.day, block.hour) or closed_reason(
            snapshot, block, block.day, block.hour
        )
        if reason:
            issues.append(f"block {block.id}: {reason}")

    for i, a in enumerate(placed):
        for b in placed[i + 1:]:
            if a.day != b.day or not windows_overlap(a.hour, a.duration, b.hour, b.duration):
                continue
            if shares_resource(a, b):
                issues.append(f"blocks {a.id} and {b.id} are double-booked on day {a.day}")
    return issues
