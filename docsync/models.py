"""Shared data models for the reconciliation job."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from .errors import RowValidationError

RowId = Union[str, int]

DEFAULT_ID_COLUMN = "id"
DEFAULT_PAYLOAD_COLUMN = "file"
DEFAULT_VERIFICATION_COLUMN = "verification_code"


@dataclass(frozen=True)
class DocumentRow:
    """One database-sourced document awaiting publication.

    ``extra`` holds every column other than the three required ones as a
    read-only mapping.
    """

    id: RowId
    payload: bytes
    verification_code: str
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def key(self) -> str:
        """String form of the id, used for artifact names and set lookups."""
        return str(self.id)

    @classmethod
    def from_mapping(
        cls,
        raw: Mapping[str, Any],
        *,
        id_column: str = DEFAULT_ID_COLUMN,
        payload_column: str = DEFAULT_PAYLOAD_COLUMN,
        verification_column: str = DEFAULT_VERIFICATION_COLUMN,
    ) -> DocumentRow:
        """Validate a raw DB row and build a ``DocumentRow`` from it."""
        missing = [
            col
            for col in (id_column, payload_column, verification_column)
            if col not in raw
        ]
        if missing:
            raise RowValidationError(f"row is missing column(s): {', '.join(missing)}")

        row_id = raw[id_column]
        if isinstance(row_id, bool) or not isinstance(row_id, (str, int)):
            raise RowValidationError(f"row id must be str or int, got {type(row_id).__name__}")
        if str(row_id).strip() == "":
            raise RowValidationError("row id is empty")

        payload = raw[payload_column]
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise RowValidationError(
                f"row {row_id}: payload must be bytes, got {type(payload).__name__}"
            )

        code = raw[verification_column]
        if not isinstance(code, str):
            raise RowValidationError(
                f"row {row_id}: verification code must be a string, got {type(code).__name__}"
            )

        required = {id_column, payload_column, verification_column}
        extra = {k: v for k, v in raw.items() if k not in required}
        return cls(
            id=row_id,
            payload=bytes(payload),
            verification_code=code,
            extra=MappingProxyType(extra),
        )


@dataclass(frozen=True)
class RemoteArtifactRef:
    """One object found under the store prefix at run start."""

    name: str
    last_modified: Optional[datetime] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class ArtifactMetadata:
    updated: Optional[datetime] = None


@dataclass(frozen=True)
class RemoteState:
    """Remote listing captured once, before any upload of the run."""

    artifacts: tuple[RemoteArtifactRef, ...]
    prefix: str = ""

    @property
    def names(self) -> frozenset[str]:
        return frozenset(a.name for a in self.artifacts)


@dataclass
class ConversionOutcome:
    """Result of converting one staged file."""

    file_name: str
    success: bool = False
    pdf_created: bool = False
    error: Optional[str] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class UploadedFile:
    row_id: RowId
    hash: str
    encrypted_url: str

    def to_dict(self) -> dict[str, Any]:
        return {"_id": self.row_id, "hash": self.hash, "encrypted_url": self.encrypted_url}


@dataclass
class FileResult:
    """Final status of one row that needed an artifact this run."""

    row_id: RowId
    success: bool
    stage: str = "done"
    error: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class RunSummary:
    total_candidates: int = 0
    success_count: int = 0
    failure_count: int = 0
    staged_count: int = 0
    per_file_results: list[FileResult] = field(default_factory=list)
    deleted_artifact_names: list[str] = field(default_factory=list)
    uploaded_files: list[UploadedFile] = field(default_factory=list)
    conversion_outcomes: list[ConversionOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_candidates": self.total_candidates,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "staged_count": self.staged_count,
            "per_file_results": [
                {
                    "row_id": r.row_id,
                    "success": r.success,
                    "stage": r.stage,
                    "error": r.error,
                    "warning": r.warning,
                }
                for r in self.per_file_results
            ],
            "deleted_artifact_names": list(self.deleted_artifact_names),
        }
