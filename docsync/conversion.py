"""Headless LibreOffice conversion of staged RTF files to PDF."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .errors import ConverterNotFoundError, ErrorReporter
from .models import ConversionOutcome
from .utils import (
    DEFAULT_CONVERSION_TIMEOUT_S,
    DEFAULT_CONVERTER,
    SOURCE_EXT,
    TARGET_EXT,
    discover_files,
)

log = logging.getLogger(__name__)

STAGE = "conversion"
NO_OUTPUT = "no output produced"


def find_converter(binary: str = DEFAULT_CONVERTER) -> str:
    """Resolve the converter executable on ``PATH``.

    Raises ``ConverterNotFoundError`` when it cannot be found; nothing can be
    converted without it.
    """
    path = shutil.which(binary)
    if not path:
        raise ConverterNotFoundError(f"Could not find LibreOffice converter {binary!r} on PATH!")
    log.debug("find_converter: using %s", path)
    return path


def classify_outcome(
    file_name: str,
    target_exists: bool,
    diagnostics: str,
) -> ConversionOutcome:
    """Decide the outcome of one conversion from what is on disk.

    The converter's own output is only used to explain a result: it warns
    on success and sometimes says nothing on failure.
    """
    diagnostics = diagnostics.strip()
    if target_exists:
        return ConversionOutcome(
            file_name=file_name,
            success=True,
            pdf_created=True,
            warning=diagnostics or None,
        )
    return ConversionOutcome(
        file_name=file_name,
        success=False,
        pdf_created=False,
        error=diagnostics or NO_OUTPUT,
    )


async def _run_converter(
    converter: str,
    source: Path,
    outdir: Path,
    target_ext: str,
    timeout_s: Optional[float],
) -> str:
    """Run one conversion and return whatever diagnostics it produced."""
    try:
        proc = await asyncio.create_subprocess_exec(
            converter,
            "--headless",
            "--convert-to",
            target_ext,
            "--outdir",
            str(outdir),
            str(source),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return f"could not start converter: {exc}"

    try:
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return f"converter timed out after {timeout_s}s"

    text = stderr.decode("utf-8", errors="replace").strip()
    if proc.returncode and not text:
        text = f"converter exited with status {proc.returncode}"
    return text


async def convert_single_file(
    converter: str,
    source: Path,
    *,
    target_ext: str = TARGET_EXT,
    timeout_s: Optional[float] = DEFAULT_CONVERSION_TIMEOUT_S,
) -> ConversionOutcome:
    """Convert one staged file. Never raises."""
    log.info("convert_single_file: START - %s", source.name)
    t0 = time.time()
    target = source.with_suffix(f".{target_ext}")
    await asyncio.to_thread(target.unlink, missing_ok=True)

    diagnostics = await _run_converter(converter, source, source.parent, target_ext, timeout_s)
    target_exists = await asyncio.to_thread(target.exists)
    outcome = classify_outcome(source.name, target_exists, diagnostics)

    log.info(
        "convert_single_file: DONE - %s success=%s in %.2fs",
        source.name,
        outcome.success,
        time.time() - t0,
    )
    return outcome


async def convert_staged_files(
    staging_dir: Path,
    *,
    converter: str,
    reporter: Optional[ErrorReporter] = None,
    source_ext: str = SOURCE_EXT,
    target_ext: str = TARGET_EXT,
    timeout_s: Optional[float] = DEFAULT_CONVERSION_TIMEOUT_S,
) -> list[ConversionOutcome]:
    """Convert every ``*.<source_ext>`` file in *staging_dir*, one at a time.

    Returns one outcome per staged file. Failures are recorded on *reporter*
    under the staged file's id; warnings on successful files are recorded
    too but do not count as failures.
    """
    reporter = reporter or ErrorReporter()
    sources = await asyncio.to_thread(discover_files, staging_dir, source_ext)
    outcomes: list[ConversionOutcome] = []

    for source in tqdm(sources, desc="Converting", disable=not sources):
        outcome = await convert_single_file(
            converter, source, target_ext=target_ext, timeout_s=timeout_s
        )
        outcomes.append(outcome)
        if not outcome.success:
            reporter.record_failure(STAGE, source.stem, outcome.error or NO_OUTPUT)
        elif outcome.warning:
            reporter.record_warning(STAGE, source.stem, outcome.warning)

    success = [o for o in outcomes if o.success]
    failed = [o for o in outcomes if not o.success]
    log.info("Conversion: %s succeeded, %s failed", len(success), len(failed))
    return outcomes
