"""Top-level reconciliation run: stage, convert, upload, purge."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional, Sequence

from . import conversion, retention, staging, upload
from .errors import ErrorReporter
from .models import (
    ConversionOutcome,
    DocumentRow,
    FileResult,
    RemoteState,
    RunSummary,
    UploadedFile,
)
from .storage import RemoteStore
from .utils import (
    DEFAULT_CONVERSION_TIMEOUT_S,
    SOURCE_EXT,
    TARGET_EXT,
    artifact_name,
    delete_local_files,
)

log = logging.getLogger(__name__)

# earliest stage wins when a row failed more than once
_STAGE_ORDER = (staging.STAGE, conversion.STAGE, upload.STAGE)


def rows_needing_artifacts(rows: Sequence[DocumentRow], remote_names: frozenset[str]) -> list[DocumentRow]:
    return [row for row in rows if artifact_name(row.key, TARGET_EXT) not in remote_names]


def summarize(
    candidates: Sequence[DocumentRow],
    staged_count: int,
    outcomes: list[ConversionOutcome],
    uploaded: list[UploadedFile],
    deleted: list[str],
    reporter: ErrorReporter,
) -> RunSummary:
    """Build the run summary, one ``FileResult`` per candidate row."""
    uploaded_ids = {str(u.row_id) for u in uploaded}
    failures_by_stage = {
        stage: {f.item: f.reason for f in reporter.failures_for(stage)} for stage in _STAGE_ORDER
    }
    warnings = {w.item: w.reason for w in reporter.warnings if w.stage == conversion.STAGE}

    results: list[FileResult] = []
    for row in candidates:
        key = row.key
        if key in uploaded_ids:
            results.append(FileResult(row_id=row.id, success=True, warning=warnings.get(key)))
            continue
        for stage in _STAGE_ORDER:
            reason = failures_by_stage[stage].get(key)
            if reason is not None:
                results.append(
                    FileResult(
                        row_id=row.id,
                        success=False,
                        stage=stage,
                        error=reason,
                        warning=warnings.get(key),
                    )
                )
                break
        else:
            results.append(
                FileResult(row_id=row.id, success=False, stage="skipped", error="not processed")
            )

    success_count = sum(1 for r in results if r.success)
    return RunSummary(
        total_candidates=len(candidates),
        success_count=success_count,
        failure_count=len(results) - success_count,
        staged_count=staged_count,
        per_file_results=results,
        deleted_artifact_names=list(deleted),
        uploaded_files=list(uploaded),
        conversion_outcomes=list(outcomes),
    )


async def run(
    rows: Sequence[DocumentRow],
    staging_dir: Path,
    remote_state: RemoteState,
    store: RemoteStore,
    crypto_key: str,
    retention_days: int,
    *,
    converter: str,
    reporter: Optional[ErrorReporter] = None,
    conversion_timeout_s: Optional[float] = DEFAULT_CONVERSION_TIMEOUT_S,
) -> RunSummary:
    """Reconcile *rows* against *remote_state* and return the run summary.

    Per-row and per-artifact failures are recorded on *reporter* and show
    up in the summary. Only ``PreconditionError``s (for example a missing
    converter) propagate.
    """
    reporter = reporter or ErrorReporter()
    window = retention.effective_retention_days(retention_days, store.max_reference_days)
    remote_names = remote_state.names
    candidates = rows_needing_artifacts(rows, remote_names)
    log.info(
        "Reconciling %s row(s) against %s remote artifact(s): %s need an artifact",
        len(rows),
        len(remote_state.artifacts),
        len(candidates),
    )

    staged_count = 0
    outcomes: list[ConversionOutcome] = []
    uploaded: list[UploadedFile] = []

    # leftovers of an aborted run must not pass for this run's output
    for ext in (SOURCE_EXT, TARGET_EXT):
        await asyncio.to_thread(delete_local_files, staging_dir, ext)

    if candidates:
        t0 = time.perf_counter()
        staged_count = await staging.write_staged_files(
            candidates, staging_dir, remote_names, reporter=reporter
        )
        log.info("Staging stage completed in %.2fs", time.perf_counter() - t0)

    if staged_count > 0:
        converter_path = conversion.find_converter(converter)
        t1 = time.perf_counter()
        outcomes = await conversion.convert_staged_files(
            staging_dir,
            converter=converter_path,
            reporter=reporter,
            timeout_s=conversion_timeout_s,
        )
        await asyncio.to_thread(delete_local_files, staging_dir, SOURCE_EXT)
        log.info("Conversion stage completed in %.2fs", time.perf_counter() - t1)

        staged_failed = reporter.failed_items(staging.STAGE)
        t2 = time.perf_counter()
        uploaded = await upload.upload_files(
            [row for row in candidates if row.key not in staged_failed],
            staging_dir,
            store,
            crypto_key,
            existing_names=remote_names,
            ttl_days=window,
            reporter=reporter,
        )
        await asyncio.to_thread(delete_local_files, staging_dir, TARGET_EXT)
        log.info("Upload stage completed in %.2fs", time.perf_counter() - t2)

    t3 = time.perf_counter()
    deleted = await retention.evaluate_retention(
        remote_state.artifacts,
        [row.key for row in rows],
        window,
        store,
        reporter=reporter,
    )
    log.info("Retention stage completed in %.2fs", time.perf_counter() - t3)

    return summarize(candidates, staged_count, outcomes, uploaded, deleted, reporter)


def run_sync(*args, **kwargs) -> RunSummary:
    """Blocking wrapper around :func:`run`."""
    return asyncio.run(run(*args, **kwargs))
