from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .. import db
from ..errors import ValidationError
from . import utils as store_utils
from .tags import ARCHIVED_TAG
from .types import PruneReport

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# Favorites and rows tagged "archived" are never pruned.
_PRUNABLE_CLAUSE = f"""
    observations.is_favorite = 0
    AND NOT EXISTS (
        SELECT 1 FROM favorites WHERE favorites.observation_id = observations.id
    )
    AND NOT EXISTS (
        SELECT 1 FROM observation_tags
        JOIN tags ON tags.id = observation_tags.tag_id
        WHERE observation_tags.observation_id = observations.id AND tags.name = '{ARCHIVED_TAG}'
    )
"""


def _aged_ids(store: MemoryStore, cutoff_epoch: int) -> list[int]:
    rows = store.conn.execute(
        f"""
        SELECT id FROM observations
        WHERE COALESCE(created_at_epoch, 0) < ? AND {_PRUNABLE_CLAUSE}
        ORDER BY created_at_epoch ASC, id ASC
        """,
        (cutoff_epoch,),
    ).fetchall()
    return [int(row["id"]) for row in rows]


def _excess_ids(store: MemoryStore, max_observations: int, exclude: set[int]) -> list[int]:
    total = store.count_observations() - len(exclude)
    excess = total - max_observations
    if excess <= 0:
        return []
    rows = store.conn.execute(
        f"""
        SELECT id FROM observations
        WHERE {_PRUNABLE_CLAUSE}
        ORDER BY created_at_epoch ASC, id ASC
        """
    ).fetchall()
    ids: list[int] = []
    for row in rows:
        observation_id = int(row["id"])
        if observation_id in exclude:
            continue
        ids.append(observation_id)
        if len(ids) >= excess:
            break
    return ids


def prune(
    store: MemoryStore,
    *,
    retention_days: int,
    max_observations: int,
    now: int | None = None,
    dry_run: bool = False,
) -> PruneReport:
    """Delete aged observations, then the oldest ones over the count ceiling.

    ``retention_days`` or ``max_observations`` of 0 disables that pass. All
    deletes share one write transaction and go through the store cascade.
    """
    if retention_days < 0:
        raise ValidationError("retention_days must be >= 0")
    if max_observations < 0:
        raise ValidationError("max_observations must be >= 0")
    current = now if now is not None else store_utils.now_epoch()
    cutoff_epoch = current - retention_days * SECONDS_PER_DAY if retention_days > 0 else None

    with store.write_transaction():
        aged = _aged_ids(store, cutoff_epoch) if cutoff_epoch is not None else []
        excess = (
            _excess_ids(store, max_observations, set(aged)) if max_observations > 0 else []
        )
        if not dry_run and (aged or excess):
            expected = store.count_observations() - len(aged) - len(excess)
            store._delete_observations_locked(aged + excess)
            observations, indexed = db.fts_row_counts(store.conn)
            if observations != expected or indexed != observations:
                raise store.mark_inconsistent(
                    f"prune left {observations} observations and {indexed} index rows, "
                    f"expected {expected}"
                )

    report = PruneReport(
        removed_by_age=len(aged),
        removed_by_count=len(excess),
        cutoff_epoch=cutoff_epoch,
        cutoff_iso=store_utils.iso_from_epoch(cutoff_epoch) if cutoff_epoch is not None else None,
        dry_run=dry_run,
    )
    logger.info(
        "%s %d observations (age=%d, count=%d, cutoff=%s)",
        "would prune" if dry_run else "pruned",
        report.removed,
        report.removed_by_age,
        report.removed_by_count,
        report.cutoff_iso or "disabled",
    )
    return report
