"""Database -> PDF -> remote storage reconciliation job.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from docsync import X`` works.
"""

from .config import DatabaseConfig, JobConfig, StorageConfig, load_config
from .conversion import classify_outcome, convert_single_file, convert_staged_files, find_converter
from .crypto import aes_decrypt, aes_encrypt, hmac_md5
from .driver import run, run_sync, summarize
from .errors import (
    ConfigError,
    ConverterNotFoundError,
    CryptoError,
    DocsyncError,
    ErrorReporter,
    ItemFailure,
    PreconditionError,
    RemoteStoreError,
    RowSourceError,
    RowValidationError,
)
from .models import (
    ArtifactMetadata,
    ConversionOutcome,
    DocumentRow,
    FileResult,
    RemoteArtifactRef,
    RemoteState,
    RunSummary,
    UploadedFile,
)
from .retention import effective_retention_days, evaluate_retention
from .sources import fetch_rows
from .staging import clean_rtf, decompress_payload, write_staged_files
from .storage import FirebaseStore, RemoteStore, S3Store, build_store, load_remote_state
from .upload import upload_files
from .utils import (
    SOURCE_EXT,
    TARGET_EXT,
    artifact_id_of,
    artifact_name,
    days_between,
    delete_local_files,
    save_results,
)

__version__ = "0.1.0"

__all__ = [
    # Models
    "DocumentRow",
    "RemoteArtifactRef",
    "ArtifactMetadata",
    "RemoteState",
    "ConversionOutcome",
    "UploadedFile",
    "FileResult",
    "RunSummary",
    # Errors
    "DocsyncError",
    "PreconditionError",
    "ConfigError",
    "ConverterNotFoundError",
    "RemoteStoreError",
    "RowSourceError",
    "RowValidationError",
    "CryptoError",
    "ErrorReporter",
    "ItemFailure",
    # Constants
    "SOURCE_EXT",
    "TARGET_EXT",
    # Utils
    "artifact_name",
    "artifact_id_of",
    "days_between",
    "delete_local_files",
    "save_results",
    # Config
    "DatabaseConfig",
    "StorageConfig",
    "JobConfig",
    "load_config",
    # Collaborators
    "RemoteStore",
    "FirebaseStore",
    "S3Store",
    "build_store",
    "load_remote_state",
    "fetch_rows",
    "hmac_md5",
    "aes_encrypt",
    "aes_decrypt",
    # Stages
    "decompress_payload",
    "clean_rtf",
    "write_staged_files",
    "find_converter",
    "classify_outcome",
    "convert_single_file",
    "convert_staged_files",
    "upload_files",
    "effective_retention_days",
    "evaluate_retention",
    # Driver
    "run",
    "run_sync",
    "summarize",
]
