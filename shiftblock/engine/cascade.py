"""
Cascading move resolution.

Relocates one placed block to a requested window and re-seats every block it
pushes out, recursively, until the timetable is conflict-free again.

Algorithm (bounded breadth-first displacement):
1. Validate the request (existence, lock state, bounds, closed slots,
   locked blocks in the target window).
2. Seat the source at the target on a working Placement; every unlocked
   block colliding with it is lifted and queued at depth 1.
3. Pop queued blocks in order. Each takes the first conflict-free window in
   day-major, hour-minor order. Failing that, it takes the window that lifts
   the fewest further blocks (ties again by day-major order), and those are
   queued at depth + 1.
4. A block already seated in this resolution is never lifted again, which
   rules out cycles. Exceeding the chain depth or the touched-block budget
   aborts the whole resolution.

Complexity:
    O(T * D * H * B_day) where T = blocks touched, D * H = candidate windows,
    B_day = blocks on one day. T is capped by max_blocks_touched.

The snapshot is never mutated. On failure no changes are returned.
"""

import logging
from collections import deque
from typing import Dict, List, Optional, Tuple

from shiftblock.engine.availability import (
    Placement,
    cap_violation,
    closed_reason,
    out_of_bounds,
    shares_resource,
    windows_overlap,
)
from shiftblock.models.entities import BlockChange, DistributionBlock, FailureKind, MoveResult, TimeSlot
from shiftblock.models.snapshot import Snapshot


logger = logging.getLogger(__name__)

DEFAULT_MAX_CHAIN_DEPTH = 4
DEFAULT_MAX_BLOCKS_TOUCHED = 25


def describe_block(snapshot: Snapshot, block: DistributionBlock) -> str:
    cls = snapshot.classes.get(block.class_id)
    class_name = cls.name if cls and cls.name else f"class {block.class_id}"
    return f"{block.lesson_code} {class_name}".strip()


def make_change(snapshot: Snapshot, block: DistributionBlock, day: int, hour: int) -> BlockChange:
    old, new = TimeSlot(block.day, block.hour), TimeSlot(day, hour)
    return BlockChange(
        block_id=block.id,
        old_day=block.day,
        old_hour=block.hour,
        new_day=day,
        new_hour=hour,
        description=f"{describe_block(snapshot, block)}: {old.label()} -> {new.label()}",
    )


def locked_collision(snapshot: Snapshot, block: DistributionBlock, day: int, hour: int) -> Optional[DistributionBlock]:
    """First locked block that the requested window would have to displace."""
    for other in sorted(snapshot.placed_blocks(), key=lambda b: b.id):
        if other.id == block.id or not other.is_locked or other.day != day:
            continue
        if windows_overlap(hour, block.duration, other.hour, other.duration) and shares_resource(block, other):
            return other
    return None


def precheck_move(
    snapshot: Snapshot, block_id: int, day: int, hour: int
) -> Tuple[Optional[DistributionBlock], Optional[MoveResult]]:
    """
    Fast failures shared by every move engine.

    Returns (source_block, None) when the engines should run, or
    (source_block_or_None, result) when the request is already decided.
    """
    block = snapshot.blocks.get(block_id)
    if block is None:
        return None, MoveResult.fail(FailureKind.INVALID_REQUEST, f"Block {block_id} not found.")
    if not block.is_placed:
        return block, MoveResult.fail(FailureKind.INVALID_REQUEST, f"Block {block_id} is not placed.")
    if block.is_locked:
        return block, MoveResult.fail(FailureKind.LOCKED_BLOCK, f"Block {block_id} is locked and cannot be moved.")

    reason = out_of_bounds(snapshot, block, day, hour)
    if reason:
        return block, MoveResult.fail(FailureKind.INVALID_REQUEST, f"Invalid target: {reason}.")

    reason = closed_reason(snapshot, block, day, hour)
    if reason:
        return block, MoveResult.fail(FailureKind.CONSTRAINT_VIOLATION, f"Target window is closed: {reason}.")

    if (block.day, block.hour) == (day, hour):
        return block, MoveResult.ok(f"Block {block_id} is already at {TimeSlot(day, hour).label()}; no movement needed.")

    locked = locked_collision(snapshot, block, day, hour)
    if locked is not None:
        return block, MoveResult.fail(
            FailureKind.LOCKED_BLOCK,
            f"Target window holds locked block {locked.id} ({describe_block(snapshot, locked)}); it cannot be displaced.",
        )
    return block, None


class _CascadeResolver:
    def __init__(self, snapshot: Snapshot, max_depth: int, max_touched: int):
        self.snapshot = snapshot
        self.max_depth = max_depth
        self.max_touched = max_touched
        self.placement = Placement(snapshot)
        self.pending: Dict[int, Tuple[int, int]] = {}
        self.target: Tuple[int, int, int] = (0, 0, 0)

    def resolve(self, source: DistributionBlock, day: int, hour: int) -> MoveResult:
        self.target = (day, hour, source.duration)
        displaced = self.placement.colliding(source, day, hour)
        reason = cap_violation(self.placement, source, day, exclude=set(displaced))
        if reason:
            return MoveResult.fail(FailureKind.CONSTRAINT_VIOLATION, f"Cannot move block {source.id}: {reason}.")
        self._seat(source, day, hour, displaced)

        queue = deque((bid, 1) for bid in displaced)
        while queue:
            bid, depth = queue.popleft()
            block = self.snapshot.blocks[bid]
            label = f"block {bid} ({describe_block(self.snapshot, block)})"

            slot, victims = self._find_window(block, allow_displacement=depth < self.max_depth)
            if slot is None:
                why = "no legal window is left" if depth < self.max_depth else (
                    f"every candidate window is occupied and the displacement chain is limited to {self.max_depth}"
                )
                return self._abort(f"Could not place {label}: {why}.")

            touched = len(self.pending) + 1 + len(queue) + len(victims)
            if touched > self.max_touched:
                return self._abort(
                    f"Could not place {label}: the move would touch {touched} blocks (limit {self.max_touched})."
                )

            self._seat(block, slot[0], slot[1], victims)
            queue.extend((victim, depth + 1) for victim in victims)

        changes = tuple(
            make_change(self.snapshot, self.snapshot.blocks[bid], d, h) for bid, (d, h) in self.pending.items()
        )
        moved = len(changes) - 1
        message = f"Block {source.id} moved to {TimeSlot(day, hour).label()}."
        if moved:
            message += f" {moved} displaced block(s) relocated."
        logger.info("Cascade resolved: %d change(s)", len(changes))
        return MoveResult.ok(message, changes)

    def _seat(self, block: DistributionBlock, day: int, hour: int, victims: List[int]) -> None:
        for victim in victims:
            self.placement.lift(victim)
        self.placement.place(block.id, day, hour)
        self.pending[block.id] = (day, hour)
        logger.debug("Seat block %d at (%d, %d), lifting %s", block.id, day, hour, victims)

    def _abort(self, message: str) -> MoveResult:
        logger.info("Cascade aborted: %s", message)
        return MoveResult.fail(FailureKind.UNRESOLVABLE_CASCADE, message)

    def _touches_target(self, day: int, hour: int, duration: int) -> bool:
        t_day, t_hour, t_duration = self.target
        return day == t_day and windows_overlap(hour, duration, t_hour, t_duration)

    def _find_window(
        self, block: DistributionBlock, allow_displacement: bool
    ) -> Tuple[Optional[Tuple[int, int]], List[int]]:
        """
        First conflict-free window, else the cheapest displacing window.

        Skips the block's own original window and the source's new window.
        Windows whose collisions include a locked block or a block already
        seated in this resolution are never chosen.
        """
        school = self.snapshot.school
        best: Optional[Tuple[Tuple[int, int], List[int]]] = None

        for day in range(1, school.max_days + 1):
            for hour in range(1, school.effective_max_hours - block.duration + 2):
                if (day, hour) == (block.day, block.hour) or self._touches_target(day, hour, block.duration):
                    continue
                if closed_reason(self.snapshot, block, day, hour):
                    continue

                hits = self.placement.colliding(block, day, hour)
                if not hits:
                    if cap_violation(self.placement, block, day) is None:
                        return (day, hour), []
                    continue

                if not allow_displacement or (best is not None and len(hits) >= len(best[1])):
                    continue
                if any(h in self.pending or self.snapshot.blocks[h].is_locked for h in hits):
                    continue
                if cap_violation(self.placement, block, day, exclude=set(hits)):
                    continue
                best = ((day, hour), hits)

        if best is None:
            return None, []
        return best


def cascade_move(
    snapshot: Snapshot,
    block_id: int,
    target_day: int,
    target_hour: int,
    max_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
    max_touched: int = DEFAULT_MAX_BLOCKS_TOUCHED,
) -> MoveResult:
    """
    Plan the relocation of one placed block, displacing others as needed.

    Args:
        snapshot: Timetable view; never mutated
        block_id: Block to move
        target_day, target_hour: Requested start of the block's window
        max_depth: Longest displacement chain allowed (source's victims are depth 1)
        max_touched: Most blocks a single resolution may relocate

    Returns:
        MoveResult with the source change first, then displaced blocks in
        resolution order. `changes` is empty whenever `success` is False.
    """
    logger.info("Cascade move: block %s -> (%s, %s)", block_id, target_day, target_hour)
    source, decided = precheck_move(snapshot, block_id, target_day, target_hour)
    if decided is not None:
        if not decided.success:
            logger.warning("Move rejected: %s", decided.message)
        return decided
    return _CascadeResolver(snapshot, max_depth, max_touched).resolve(source, target_day, target_hour)
