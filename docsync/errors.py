"""Error taxonomy and the per-run failure reporter.

Fatal problems (a missing converter, an unreachable store, a broken row
source, an unusable config) are raised as ``PreconditionError`` subclasses
and stop the run. Everything that concerns a single row or artifact is
recorded on an ``ErrorReporter`` instead, and the run carries on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)


class DocsyncError(Exception):
    """Base class for all errors raised by docsync."""


class PreconditionError(DocsyncError):
    """A condition the whole run depends on does not hold."""


class ConfigError(PreconditionError):
    pass


class ConverterNotFoundError(PreconditionError):
    pass


class RemoteStoreError(PreconditionError):
    pass


class RowSourceError(PreconditionError):
    pass


class RowValidationError(RowSourceError):
    pass


class CryptoError(DocsyncError):
    pass


@dataclass(frozen=True)
class ItemFailure:
    """A recoverable per-item failure recorded during a run."""

    stage: str
    item: str
    reason: str


class ErrorReporter:
    """Collects recoverable failures and warnings for one run.

    An instance is created by the caller and handed to every stage, so two
    runs in the same process never share state.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or log
        self.failures: list[ItemFailure] = []
        self.warnings: list[ItemFailure] = []

    def record_failure(
        self,
        stage: str,
        item: object,
        reason: str,
        exc: Optional[BaseException] = None,
    ) -> None:
        failure = ItemFailure(stage=stage, item=str(item), reason=reason)
        self.failures.append(failure)
        if exc is not None:
            self._log.warning("%s: %s failed: %s (%s)", stage, item, reason, exc)
            self._log.debug("%s: %s traceback", stage, item, exc_info=exc)
        else:
            self._log.warning("%s: %s failed: %s", stage, item, reason)

    def record_warning(self, stage: str, item: object, message: str) -> None:
        self.warnings.append(ItemFailure(stage=stage, item=str(item), reason=message))
        self._log.warning("%s: %s WARNING => %s", stage, item, message)

    def failures_for(self, stage: str) -> list[ItemFailure]:
        return [f for f in self.failures if f.stage == stage]

    def failed_items(self, stage: str) -> set[str]:
        return {f.item for f in self.failures if f.stage == stage}

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)
