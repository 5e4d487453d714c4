from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List

from shiftblock.engine.availability import closed_reason, find_violations, is_slot_available
from shiftblock.models.entities import EntityKind, SlotState, TimeSlot
from shiftblock.models.snapshot import Snapshot

# Heatmap rows never go past this hour.
MAX_GRID_HOURS = 12


@dataclass
class ValidationReport:
    assignment_completeness: float
    teacher_availability: float
    resource_balance: float
    schedule_feasibility: float
    assignment_issues: List[str] = field(default_factory=list)
    teacher_issues: List[str] = field(default_factory=list)
    resource_issues: List[str] = field(default_factory=list)
    schedule_issues: List[str] = field(default_factory=list)
    critical_conflicts: List[str] = field(default_factory=list)
    heatmap: Dict[int, Dict[int, str]] = field(default_factory=dict)
    total_hours: int = 0
    placed_hours: int = 0

    @property
    def can_proceed(self) -> bool:
        return (
            self.assignment_completeness >= 100
            and self.teacher_availability >= 50
            and self.resource_balance >= 50
            and self.schedule_feasibility >= 50
        )


def _open_school_slots(snapshot: Snapshot) -> int:
    school = snapshot.school
    return sum(
        1
        for day in range(1, school.max_days + 1)
        for hour in range(1, school.effective_max_hours + 1)
        if school.default_timetable.get(TimeSlot(day, hour)) != SlotState.CLOSED
    )


def check_assignment(snapshot: Snapshot):
    total = sum(b.duration for b in snapshot.blocks.values())
    placed = sum(b.duration for b in snapshot.placed_blocks())
    issues = [
        f"Block {b.id} ({b.lesson_code}) is not placed"
        for b in sorted(snapshot.blocks.values(), key=lambda b: b.id)
        if not b.is_placed
    ]
    percentage = placed / total * 100 if total > 0 else 100.0
    return percentage, issues, total, placed


def check_teachers(snapshot: Snapshot):
    """Closed-slot placements, teacher caps and class day length. Each costs 10 points."""
    issues = []
    violations = 0
    school = snapshot.school
    placed = snapshot.placed_blocks()

    for tid, teacher in sorted(snapshot.teachers.items()):
        own = [b for b in placed if tid in b.teacher_ids]
        for block in own:
            for h in block.hours():
                slot = TimeSlot(block.day, h)
                if not is_slot_available(snapshot, EntityKind.TEACHER, tid, slot):
                    issues.append(f"{teacher.name or tid}: block {block.id} sits in closed slot {slot.label()}")
                    violations += 1
        if teacher.max_hours_per_day is not None:
            for day in range(1, school.max_days + 1):
                load = sum(b.duration for b in own if b.day == day)
                if load > teacher.max_hours_per_day:
                    issues.append(f"{teacher.name or tid}: {load}h on day {day} (max {teacher.max_hours_per_day})")
                    violations += 1
        if teacher.max_hours_per_week is not None:
            load = sum(b.duration for b in own)
            if load > teacher.max_hours_per_week:
                issues.append(f"{teacher.name or tid}: {load}h this week (max {teacher.max_hours_per_week})")
                violations += 1

    per_class_day = defaultdict(int)
    for block in placed:
        per_class_day[(block.class_id, block.day)] += block.duration
    for (class_id, day), load in sorted(per_class_day.items()):
        if load > school.effective_max_hours:
            cls = snapshot.classes.get(class_id)
            name = cls.name if cls and cls.name else f"class {class_id}"
            issues.append(f"{name}: {load}h on day {day} (school day has {school.effective_max_hours})")
            violations += 1

    percentage = max(0, 100 - violations * 10) if snapshot.teachers else 100
    return percentage, issues


def check_resources(snapshot: Snapshot):
    """
    Build the availability heatmap and count capacity conflicts.

    Cell text is "available/active": teachers open at the slot against blocks
    running in it. Closed school slots show "-". A cell with no available
    teachers and no active blocks is neutral, not a conflict.
    """
    school = snapshot.school
    placed = snapshot.placed_blocks()
    issues = []
    conflicts = 0

    block_end = max((b.hour + b.duration - 1 for b in placed), default=0)
    max_hour = min(MAX_GRID_HOURS, max(school.effective_max_hours, block_end)) or school.max_hours

    grid: Dict[int, Dict[int, str]] = {}
    for day in range(1, school.max_days + 1):
        row = {}
        for hour in range(1, max_hour + 1):
            slot = TimeSlot(day, hour)
            if school.default_timetable.get(slot) == SlotState.CLOSED:
                row[hour] = "-"
                continue
            available = sum(
                1 for tid in snapshot.teachers if is_slot_available(snapshot, EntityKind.TEACHER, tid, slot)
            )
            active = sum(1 for b in placed if b.day == day and hour in b.hours())
            row[hour] = f"{available}/{active}"
            if active > available:
                conflicts += 1
                issues.append(f"{slot.label()}: {active} block(s) running but only {available} teacher(s) available")
        grid[day] = row

    occupancy = defaultdict(list)
    for block in placed:
        if block.room_id is None:
            continue
        for h in block.hours():
            occupancy[(block.room_id, block.day, h)].append(block.id)
    for (room_id, day, hour), ids in sorted(occupancy.items()):
        if len(ids) > 1:
            room = snapshot.rooms.get(room_id)
            name = room.name if room and room.name else f"room {room_id}"
            issues.append(f"{name}: {len(ids)} blocks at {TimeSlot(day, hour).label()} (blocks {', '.join(map(str, ids))})")
            conflicts += 1

    return max(0, 100 - conflicts * 5), issues, grid


def check_feasibility(snapshot: Snapshot):
    total = sum(b.duration for b in snapshot.blocks.values())
    capacity = len(snapshot.classes) * _open_school_slots(snapshot)
    if total > capacity:
        return 40, [f"School capacity is short by {total - capacity}h ({total}h of lessons, {capacity}h available)"]
    return 100, []


def find_critical_conflicts(snapshot: Snapshot) -> List[str]:
    """Problems that make a conflict-free timetable impossible as the data stands."""
    school = snapshot.school
    issues = [f"[CRITICAL] {v}" for v in find_violations(snapshot) if "double-booked" in v]

    for block in sorted(snapshot.blocks.values(), key=lambda b: b.id):
        if block.is_placed:
            continue
        windows = sum(
            1
            for day in range(1, school.max_days + 1)
            for hour in range(1, school.effective_max_hours - block.duration + 2)
            if closed_reason(snapshot, block, day, hour) is None
        )
        if windows == 0:
            issues.append(f"[CRITICAL] Block {block.id} ({block.lesson_code}) has no open window anywhere in the week")

    for tid, teacher in sorted(snapshot.teachers.items()):
        load = sum(b.duration for b in snapshot.blocks.values() if tid in b.teacher_ids)
        open_slots = sum(
            1
            for day in range(1, school.max_days + 1)
            for hour in range(1, school.effective_max_hours + 1)
            if is_slot_available(snapshot, EntityKind.TEACHER, tid, TimeSlot(day, hour))
        )
        if load > open_slots:
            issues.append(f"[CRITICAL] {teacher.name or tid} needs {load}h but has only {open_slots} open slot(s)")

    room_load = defaultdict(int)
    for block in snapshot.blocks.values():
        if block.room_id is not None:
            room_load[block.room_id] += block.duration
    open_slots = _open_school_slots(snapshot)
    for room_id, load in sorted(room_load.items()):
        if load > open_slots:
            room = snapshot.rooms.get(room_id)
            name = room.name if room and room.name else f"room {room_id}"
            issues.append(f"[CRITICAL] {name} is booked for {load}h but the school is open {open_slots}h")
    return issues


def validate(snapshot: Snapshot) -> ValidationReport:
    """Score a snapshot on four axes and collect the issues behind each score."""
    completeness, assignment_issues, total, placed = check_assignment(snapshot)
    teacher_score, teacher_issues = check_teachers(snapshot)
    resource_score, resource_issues, grid = check_resources(snapshot)
    feasibility, schedule_issues = check_feasibility(snapshot)

    critical = find_critical_conflicts(snapshot)
    if critical:
        feasibility = max(10, feasibility - len(critical) * 25)

    return ValidationReport(
        assignment_completeness=completeness,
        teacher_availability=teacher_score,
        resource_balance=resource_score,
        schedule_feasibility=feasibility,
        assignment_issues=assignment_issues,
        teacher_issues=teacher_issues,
        resource_issues=resource_issues,
        schedule_issues=schedule_issues,
        critical_conflicts=critical,
        heatmap=grid,
        total_hours=total,
        placed_hours=placed,
    )
