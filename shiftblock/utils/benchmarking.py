import time
from dataclasses import dataclass
from typing import List

from shiftblock.config.settings import get_settings
from shiftblock.engine.cascade import cascade_move
from shiftblock.engine.cpsat_edit import solve_move_with_ortools
from shiftblock.models.snapshot import Snapshot


@dataclass
class BenchmarkResult:
    engine_name: str
    time_seconds: float
    blocks_moved: int
    success: bool
    message: str


def benchmark_editors(snapshot: Snapshot, block_id: int, day: int, hour: int) -> List[BenchmarkResult]:
    """
    Compare the cascade search and CP-SAT on the same move request.
    Returns list of BenchmarkResult.
    """
    settings = get_settings()
    editors = [
        (
            "cascade",
            lambda: cascade_move(
                snapshot, block_id, day, hour,
                max_depth=settings.max_chain_depth,
                max_touched=settings.max_blocks_touched,
            ),
        ),
        (
            "cpsat",
            lambda: solve_move_with_ortools(
                snapshot, block_id, day, hour, time_limit_seconds=settings.cpsat_time_limit_seconds
            ),
        ),
    ]

    results = []
    for name, run in editors:
        start = time.perf_counter()
        outcome = run()
        elapsed = time.perf_counter() - start
        results.append(BenchmarkResult(
            engine_name=name,
            time_seconds=elapsed,
            blocks_moved=len(outcome.changes),
            success=outcome.success,
            message=outcome.message,
        ))
    return results
