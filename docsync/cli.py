"""CLI entrypoint for the database -> PDF -> remote storage reconciliation job.

Usage:
    python -m docsync
    python -m docsync --config /etc/docsync/config.json
    python -m docsync --config config.json --staging-dir /tmp/docsync
    python -m docsync --config config.json --detailed-logging --log-file job.log
"""

from __future__ import annotations

import argparse
import json
import logging
from logging.handlers import RotatingFileHandler
import time
from pathlib import Path

from .errors import DocsyncError, ErrorReporter
from .models import RunSummary

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    from .config import DEFAULT_CONFIG_FILE

    parser = argparse.ArgumentParser(
        description="Publish database documents as PDFs to remote storage and purge stale ones"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"JSON configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--staging-dir",
        type=Path,
        default=None,
        help="Local staging directory (overrides staging_dir from the config)",
    )
    parser.add_argument(
        "--results-file",
        type=Path,
        default=None,
        help="Where to write the JSON results (overrides results_file from the config)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Optional rotating log file path",
    )
    return parser.parse_args(argv)


def _log_summary(
    summary: RunSummary,
    reporter: ErrorReporter,
    results_path: Path,
    elapsed: float,
) -> None:
    log.info("=" * 60)
    log.info("JOB COMPLETE")
    log.info("  Candidates:      %s", summary.total_candidates)
    log.info("  Staged:          %s", summary.staged_count)
    log.info("  Uploaded:        %s", summary.success_count)
    log.info("  Failed:          %s", summary.failure_count)
    log.info("  Remote deleted:  %s", len(summary.deleted_artifact_names))
    log.info("  Results:         %s", results_path)
    log.info("  Total runtime:   %.1fs", elapsed)
    failed = [r for r in summary.per_file_results if not r.success]
    if failed:
        log.warning("Failed rows:")
        for r in failed:
            log.warning("  - %s [%s]: %s", r.row_id, r.stage, (r.error or "unknown")[:200])
    warned = [r for r in summary.per_file_results if r.success and r.warning]
    if warned:
        log.info("Converted with warnings:")
        for r in warned:
            log.info("  - %s: %s", r.row_id, r.warning[:200])
    retention_failures = reporter.failures_for("retention")
    if retention_failures:
        log.warning("Remote artifacts not deleted:")
        for f in retention_failures:
            log.warning("  - %s: %s", f.item, f.reason[:200])
    retention_warnings = [w for w in reporter.warnings if w.stage == "retention"]
    if retention_warnings:
        log.warning("Remote artifacts skipped by retention:")
        for w in retention_warnings:
            log.warning("  - %s: %s", w.item, w.reason[:200])


def main(argv: list[str] | None = None) -> int:
    """Run one reconciliation job. Returns the process exit code."""
    from . import driver
    from .config import load_config
    from .sources import fetch_rows
    from .storage import build_store, load_remote_state
    from .utils import save_results

    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        log_file=args.log_file,
    )

    overall_t0 = time.perf_counter()
    log.info("Job started!")
    try:
        config = load_config(args.config).with_overrides(
            staging_dir=args.staging_dir,
            results_file=args.results_file,
        )

        store = build_store(config.storage)
        remote_state = load_remote_state(store)
        rows = fetch_rows(config.database)

        reporter = ErrorReporter()
        summary = driver.run_sync(
            rows,
            config.staging_dir,
            remote_state,
            store,
            config.crypto_key,
            config.storage.file_retention,
            converter=config.converter,
            reporter=reporter,
            conversion_timeout_s=config.conversion_timeout_s,
        )
        try:
            results_path = save_results(
                config.results_file, summary, reporter.failures, reporter.warnings
            )
        except OSError as exc:
            log.error("ERROR => could not write results to %s: %s", config.results_file, exc)
            for uploaded in summary.uploaded_files:
                log.error("Unsaved upload record: %s", json.dumps(uploaded.to_dict(), default=str))
            return 1
        _log_summary(summary, reporter, results_path, time.perf_counter() - overall_t0)
    except DocsyncError as exc:
        log.error("ERROR => %s", exc)
        return 1
    finally:
        log.info("Job finished!")
    return 0
