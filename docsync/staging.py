"""Materialize row payloads as local RTF files for conversion."""

from __future__ import annotations

import asyncio
import gzip
import logging
import zlib
from pathlib import Path
from typing import Iterable, Optional

from .errors import ErrorReporter
from .models import DocumentRow
from .utils import SOURCE_EXT, TARGET_EXT, artifact_name, ensure_staging_dir

log = logging.getLogger(__name__)

STAGE = "staging"

RTF_MARKER = b"{\\rtf"
RTF_HEADER = b"{\\rtf1\\ansi\\ansicpg1252\\deff0{\\fonttbl{\\f0\\fnil Arial;}}\\f0\\fs20 "


def decompress_payload(payload: bytes) -> bytes:
    """Gunzip a stored payload.

    Raises ``ValueError`` for anything that is not a valid gzip stream.
    """
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as exc:
        raise ValueError(f"payload is not valid gzip data: {exc}") from exc


def clean_rtf(data: bytes) -> bytes:
    """Strip junk around an RTF document.

    Bytes before the ``{\\rtf`` control word and NUL/whitespace padding after
    the last closing brace are dropped. A body with no RTF header at all is
    wrapped in a minimal one so the converter still accepts it.
    """
    start = data.find(RTF_MARKER)
    if start == -1:
        body = data.strip(b"\x00 \t\r\n")
        if not body:
            raise ValueError("payload is empty after decompression")
        return RTF_HEADER + body + b"}"

    data = data[start:]
    end = data.rfind(b"}")
    if end != -1:
        data = data[: end + 1]
    return data


def _write_file(path: Path, data: bytes) -> None:
    path.write_bytes(data)


async def _stage_row(row: DocumentRow, staging_dir: Path, reporter: ErrorReporter) -> bool:
    target = staging_dir / artifact_name(row.key, SOURCE_EXT)
    try:
        cleaned = clean_rtf(decompress_payload(row.payload))
        await asyncio.to_thread(_write_file, target, cleaned)
    except (ValueError, OSError) as exc:
        reporter.record_failure(STAGE, row.key, str(exc))
        return False
    log.debug("Staged %s (%s bytes)", target.name, len(cleaned))
    return True


async def write_staged_files(
    rows: Iterable[DocumentRow],
    staging_dir: Path,
    existing_names: Iterable[str],
    *,
    reporter: Optional[ErrorReporter] = None,
) -> int:
    """Write ``<id>.rtf`` for every row that has no ``<id>.pdf`` remotely.

    Returns the number of files written. Rows whose payload cannot be
    decoded are recorded on *reporter* and skipped.
    """
    reporter = reporter or ErrorReporter()
    existing = set(existing_names)
    pending = [row for row in rows if artifact_name(row.key, TARGET_EXT) not in existing]
    if not pending:
        log.info("There are no files to upload for now!")
        return 0

    ensure_staging_dir(staging_dir)
    results = await asyncio.gather(
        *(_stage_row(row, staging_dir, reporter) for row in pending)
    )
    written = sum(1 for ok in results if ok)

    if written <= 0:
        log.info("There are no files to upload for now!")
    else:
        log.info("%s RTF files were saved to %s.", written, staging_dir)
    return written
