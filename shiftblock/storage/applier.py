import logging
from dataclasses import replace
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from shiftblock.engine.availability import find_violations
from shiftblock.models.entities import BlockChange, PlacementMode
from shiftblock.storage.repositories import BlockStore, TimetableRepository


logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A change-set could not be committed; the transaction was rolled back."""


class StaleSnapshotError(PersistenceError):
    """The change-set was planned against an older revision than the stored one."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Snapshot revision {expected} is stale; stored revision is {actual}")
        self.expected = expected
        self.actual = actual


class ChangeSetViolationError(PersistenceError):
    """Applying the change-set would break a placement invariant the timetable does not already break."""

    def __init__(self, violations: List[str]):
        super().__init__("Change-set rejected: " + "; ".join(violations))
        self.violations = violations


def apply_changes(changes: Iterable[BlockChange], store: BlockStore, expected_revision: Optional[int] = None) -> int:
    """
    Commit a confirmed change-set in a single transaction.

    The change-set is checked against the stored timetable first: it may not
    touch a locked block, and the resulting placement may not introduce a
    double booking or a closed-slot placement that is not already there.
    Then, for each change: clear the block's placement bookkeeping, write the new
    window and mark it as manually placed. The derived timetable cells are
    rebuilt once at the end and the revision is bumped. Any failure rolls the
    whole transaction back and raises PersistenceError.

    Returns:
        The new revision.
    """
    changes = list(changes)
    store.begin()
    try:
        if expected_revision is not None:
            actual = store.current_revision()
            if actual != expected_revision:
                raise StaleSnapshotError(expected_revision, actual)

        models = [store.get_block(change.block_id) for change in changes]
        for model in models:
            if model.is_locked:
                raise PersistenceError(f"Block {model.id} is locked and cannot be relocated")

        snapshot = TimetableRepository(store.db).load_snapshot()
        existing = set(find_violations(snapshot))
        introduced = [v for v in find_violations(snapshot.with_changes(changes)) if v not in existing]
        if introduced:
            raise ChangeSetViolationError(introduced)

        for change, model in zip(changes, models):
            block = replace(
                TimetableRepository._model_to_block(model), day=change.new_day, hour=change.new_hour
            )
            store.clear_placement(change.block_id)
            store.place_block(block, PlacementMode.MANUAL)

        store.sync_derived_tables()
        revision = store.bump_revision()
        store.commit()
    except PersistenceError as e:
        store.rollback()
        logger.error(f"Change-set rolled back: {e}")
        raise
    except (SQLAlchemyError, LookupError) as e:
        store.rollback()
        logger.error(f"Change-set rolled back: {e}")
        raise PersistenceError(f"Could not apply {len(changes)} change(s): {e}") from e

    logger.info(f"Applied {len(changes)} change(s), revision now {revision}")
    return revision
