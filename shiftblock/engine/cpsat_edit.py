from collections import defaultdict
import logging
from typing import Dict, List, Tuple

from ortools.sat.python import cp_model

from shiftblock.engine.availability import closed_reason, out_of_bounds
from shiftblock.engine.cascade import make_change, precheck_move
from shiftblock.models.entities import FailureKind, MoveResult, TimeSlot
from shiftblock.models.snapshot import Snapshot


logger = logging.getLogger(__name__)

# Cost of relocating one block; window position (< STAY_PENALTY) breaks ties day-major.
STAY_PENALTY = 100


def _resource_keys(block) -> List[Tuple[str, int]]:
    keys = [("class", block.class_id)]
    keys.extend(("teacher", tid) for tid in sorted(block.teacher_ids))
    if block.room_id is not None:
        keys.append(("room", block.room_id))
    return keys


def solve_move_with_ortools(
    snapshot: Snapshot,
    block_id: int,
    target_day: int,
    target_hour: int,
    time_limit_seconds: float = 10,
) -> MoveResult:
    """
    Resolve a move with Google OR-Tools CP-SAT instead of the cascade search.

    The source block is pinned to the target window, locked blocks stay where
    they are, and every other placed block may take any legal window. Each
    (class/teacher/room, day, hour) cell holds at most one block and teacher
    hour caps hold. The objective keeps as many blocks in place as possible,
    so the result is usually the smallest reshuffle, not just any feasible one.
    """
    logger.info("CP-SAT move: block %s -> (%s, %s)", block_id, target_day, target_hour)
    source, decided = precheck_move(snapshot, block_id, target_day, target_hour)
    if decided is not None:
        if not decided.success:
            logger.warning("Move rejected: %s", decided.message)
        return decided

    school = snapshot.school
    max_hours = school.effective_max_hours
    model = cp_model.CpModel()

    # block_id -> [(day, hour, var)]
    choices: Dict[int, List[Tuple[int, int, cp_model.IntVar]]] = {}
    cells = defaultdict(list)   # (kind, id, day, hour) -> vars
    fixed = defaultdict(int)    # (kind, id, day, hour) -> occupied hours by locked blocks
    day_load = defaultdict(list)  # (teacher_id, day) -> [(duration, var)]
    fixed_day_load = defaultdict(int)
    penalties = []

    for block in sorted(snapshot.placed_blocks(), key=lambda b: b.id):
        if block.is_locked:
            for key in _resource_keys(block):
                for h in block.hours():
                    fixed[key + (block.day, h)] += 1
            for tid in block.teacher_ids:
                fixed_day_load[(tid, block.day)] += block.duration
            continue

        if block.id == source.id:
            windows = [(target_day, target_hour)]
        else:
            windows = [(block.day, block.hour)]
            for day in range(1, school.max_days + 1):
                for hour in range(1, max_hours - block.duration + 2):
                    if (day, hour) == (block.day, block.hour):
                        continue
                    if out_of_bounds(snapshot, block, day, hour) or closed_reason(snapshot, block, day, hour):
                        continue
                    windows.append((day, hour))

        options = []
        for day, hour in windows:
            var = model.NewBoolVar(f"b{block.id}_d{day}_h{hour}")
            options.append((day, hour, var))
            for key in _resource_keys(block):
                for h in block.hours(hour):
                    cells[key + (day, h)].append(var)
            for tid in block.teacher_ids:
                day_load[(tid, day)].append((block.duration, var))
            if block.id != source.id and (day, hour) != (block.day, block.hour):
                penalties.append((STAY_PENALTY + (day - 1) * max_hours + hour) * var)

        model.AddExactlyOne(var for _, _, var in options)
        choices[block.id] = options

    # Hard constraint: one block per resource per hour
    for key, vars_ in cells.items():
        model.Add(sum(vars_) <= 1 - fixed.get(key, 0))

    # Hard constraint: teacher daily and weekly caps
    for tid, teacher in snapshot.teachers.items():
        if teacher.max_hours_per_day is not None:
            for day in range(1, school.max_days + 1):
                terms = [d * v for d, v in day_load.get((tid, day), [])]
                if terms:
                    model.Add(sum(terms) <= teacher.max_hours_per_day - fixed_day_load.get((tid, day), 0))
        if teacher.max_hours_per_week is not None:
            terms = [d * v for day in range(1, school.max_days + 1) for d, v in day_load.get((tid, day), [])]
            if terms:
                fixed_week = sum(fixed_day_load.get((tid, day), 0) for day in range(1, school.max_days + 1))
                model.Add(sum(terms) <= teacher.max_hours_per_week - fixed_week)

    if penalties:
        model.Minimize(sum(penalties))

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = time_limit_seconds
    solver.parameters.num_search_workers = 1
    solver.parameters.random_seed = 0
    solver.parameters.log_search_progress = False

    status = solver.Solve(model)

    if status == cp_model.INFEASIBLE:
        message = f"No conflict-free arrangement exists with block {block_id} at {TimeSlot(target_day, target_hour).label()}."
        logger.info("CP-SAT move infeasible: %s", message)
        return MoveResult.fail(FailureKind.UNRESOLVABLE_CASCADE, message)
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        message = f"Solver stopped after {time_limit_seconds}s without an arrangement for block {block_id}."
        logger.warning("CP-SAT move gave up: %s", message)
        return MoveResult.fail(FailureKind.UNRESOLVABLE_CASCADE, message)

    # Extract solution: source first, then every relocated block by id
    changes = [make_change(snapshot, source, target_day, target_hour)]
    for bid, options in sorted(choices.items()):
        if bid == source.id:
            continue
        block = snapshot.blocks[bid]
        for day, hour, var in options:
            if solver.Value(var) and (day, hour) != (block.day, block.hour):
                changes.append(make_change(snapshot, block, day, hour))

    moved = len(changes) - 1
    message = f"Block {source.id} moved to {TimeSlot(target_day, target_hour).label()}."
    if moved:
        message += f" {moved} displaced block(s) relocated."
    logger.info("CP-SAT move resolved: %d change(s), status %s", len(changes), solver.StatusName(status))
    return MoveResult.ok(message, tuple(changes))
