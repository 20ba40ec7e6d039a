"""Purge remote artifacts that are both stale and orphaned."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from .errors import ErrorReporter
from .models import RemoteArtifactRef
from .storage import RemoteStore
from .utils import artifact_id_of, days_between, utc_now

log = logging.getLogger(__name__)

STAGE = "retention"


def effective_retention_days(retention_days: int, max_reference_days: Optional[int]) -> int:
    """Clamp the retention window to the store's reference lifetime, if any."""
    if max_reference_days is None:
        return retention_days
    return min(retention_days, max_reference_days)


async def _artifact_age_days(
    artifact: RemoteArtifactRef,
    store: RemoteStore,
    reporter: ErrorReporter,
    now: datetime,
) -> Optional[int]:
    """Age of *artifact* in days, or ``None`` when it cannot be determined."""
    updated = artifact.last_modified
    if updated is None:
        try:
            metadata = await asyncio.to_thread(store.get_metadata, artifact.name)
        except Exception as exc:
            reporter.record_warning(STAGE, artifact.name, f"failed to check age: {exc}")
            return None
        updated = metadata.updated
    if updated is None:
        return None
    return days_between(now, updated)


async def _evaluate_artifact(
    artifact: RemoteArtifactRef,
    current_ids: frozenset[str],
    retention_days: int,
    store: RemoteStore,
    reporter: ErrorReporter,
    now: datetime,
) -> Optional[str]:
    artifact_id = artifact_id_of(artifact.name)
    if artifact_id is None:
        return None

    is_orphan = artifact_id not in current_ids
    age = await _artifact_age_days(artifact, store, reporter, now)
    is_outdated = age is not None and age >= retention_days
    if not (is_orphan and is_outdated):
        return None

    try:
        await asyncio.to_thread(store.delete, artifact.name)
    except Exception as exc:
        reporter.record_failure(STAGE, artifact.name, "delete failed", exc)
        return None
    log.info('The "%s/%s" file was removed from cloud storage.', store.prefix, artifact.name)
    return artifact.name


async def evaluate_retention(
    artifacts: Iterable[RemoteArtifactRef],
    current_row_ids: Iterable[object],
    retention_days: int,
    store: RemoteStore,
    *,
    reporter: Optional[ErrorReporter] = None,
    now: Optional[datetime] = None,
) -> list[str]:
    """Delete every artifact that is stale and matches no current row.

    All artifacts are evaluated concurrently. Returns the deleted names in
    listing order; failed deletions are recorded on *reporter* and left out.
    """
    reporter = reporter or ErrorReporter()
    now = now or utc_now()
    current_ids = frozenset(str(i) for i in current_row_ids)
    artifacts = list(artifacts)

    results = await asyncio.gather(
        *(
            _evaluate_artifact(a, current_ids, retention_days, store, reporter, now)
            for a in artifacts
        )
    )
    deleted = [name for name in results if name]
    log.info(
        "Retention: %s of %s remote artifact(s) deleted (window %s days)",
        len(deleted),
        len(artifacts),
        retention_days,
    )
    return deleted
