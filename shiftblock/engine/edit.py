import logging
from typing import Optional, Tuple

from shiftblock.config.settings import get_settings
from shiftblock.engine.cascade import cascade_move
from shiftblock.engine.cpsat_edit import solve_move_with_ortools
from shiftblock.models.entities import FailureKind, MoveResult
from shiftblock.models.snapshot import Snapshot


logger = logging.getLogger(__name__)

settings = get_settings()

ENGINES = ("auto", "cascade", "cpsat")


def plan_move(
    snapshot: Snapshot,
    block_id: int,
    target_day: int,
    target_hour: int,
    engine: Optional[str] = None,
) -> Tuple[MoveResult, str]:
    """
    Plan a block move with the configured engine.

    "auto" tries the cascade search first and falls back to CP-SAT only when
    the cascade gives up on its chain or budget limits; every other failure is
    final. Returns the result and the name of the engine that produced it.
    """
    engine = engine or settings.edit_engine
    if engine not in ENGINES:
        raise ValueError(f"Unknown edit engine '{engine}', expected one of {', '.join(ENGINES)}")

    if engine == "cpsat":
        return _cpsat(snapshot, block_id, target_day, target_hour), "cpsat"

    result = cascade_move(
        snapshot,
        block_id,
        target_day,
        target_hour,
        max_depth=settings.max_chain_depth,
        max_touched=settings.max_blocks_touched,
    )
    if engine == "cascade" or result.failure != FailureKind.UNRESOLVABLE_CASCADE:
        return result, "cascade"

    logger.info("Cascade could not resolve block %s, falling back to CP-SAT", block_id)
    return _cpsat(snapshot, block_id, target_day, target_hour), "cpsat"


def _cpsat(snapshot: Snapshot, block_id: int, target_day: int, target_hour: int) -> MoveResult:
    return solve_move_with_ortools(
        snapshot, block_id, target_day, target_hour, time_limit_seconds=settings.cpsat_time_limit_seconds
    )
