"""Cross-cutting helpers: constants, artifact naming, local cleanup, result I/O."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import ItemFailure
from .models import RowId, RunSummary

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE_EXT = "rtf"
TARGET_EXT = "pdf"
DEFAULT_CONVERTER = "soffice"
DEFAULT_CONVERSION_TIMEOUT_S = 300.0
DEFAULT_STAGING_DIR = "files"
DEFAULT_RESULTS_FILE = "results.json"

_ARTIFACT_NAME_RE = re.compile(r"^([A-Za-z0-9_]+)\.(pdf|rtf)$")


# ---------------------------------------------------------------------------
# Artifact naming
# ---------------------------------------------------------------------------


def artifact_name(row_id: RowId, ext: str = TARGET_EXT) -> str:
    """Return ``"<id>.<ext>"``, the name shared by local and remote files."""
    return f"{row_id}.{ext}"


def artifact_id_of(name: str) -> Optional[str]:
    """Extract the row id from a managed artifact name.

    Returns ``None`` for anything that does not look like ``<id>.pdf`` or
    ``<id>.rtf``; such objects are not ours to touch.
    """
    match = _ARTIFACT_NAME_RE.match(name)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_between(now: datetime, then: datetime) -> int:
    """Whole days from the UTC calendar date of *then* to *now*."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    then_midnight = datetime.combine(
        then.astimezone(timezone.utc).date(), datetime.min.time(), tzinfo=timezone.utc
    )
    return int((now.astimezone(timezone.utc) - then_midnight).total_seconds() // 86400)


# ---------------------------------------------------------------------------
# Local staging helpers
# ---------------------------------------------------------------------------


def ensure_staging_dir(staging_dir: Path) -> Path:
    staging_dir.mkdir(parents=True, exist_ok=True)
    return staging_dir


def discover_files(folder: Path, ext: str) -> list[Path]:
    """Find ``*.<ext>`` files directly under *folder*, sorted by name."""
    if not folder.exists():
        return []
    return sorted(p for p in folder.glob(f"*.{ext}") if p.is_file())


def delete_local_files(folder: Path, ext: str) -> int:
    """Remove every ``*.<ext>`` file from *folder* and return how many went."""
    removed = 0
    for path in discover_files(folder, ext):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as exc:
            log.warning("Could not delete local file %s: %s", path, exc)
    log.info("Removed %s local .%s file(s) from %s", removed, ext, folder)
    return removed


# ---------------------------------------------------------------------------
# Result I/O
# ---------------------------------------------------------------------------


def save_results(
    results_path: Path,
    summary: RunSummary,
    failures: list[ItemFailure],
    warnings: Sequence[ItemFailure] = (),
) -> Path:
    """Write the run results as JSON and return the file path."""
    payload: dict[str, Any] = {
        "finished_at": utc_now().isoformat(),
        "uploaded_files": [u.to_dict() for u in summary.uploaded_files],
        "deleted_files": list(summary.deleted_artifact_names),
        "summary": summary.to_dict(),
        "failures": [
            {"stage": f.stage, "item": f.item, "reason": f.reason} for f in failures
        ],
        "warnings": [
            {"stage": w.stage, "item": w.item, "reason": w.reason} for w in warnings
        ],
    }
    results_path.parent.mkdir(parents=True, exist_ok=True)
    with open(results_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False, default=str)
    return results_path
