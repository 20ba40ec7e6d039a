"""Sequential upload of converted files and reference encryption."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

from tqdm import tqdm

from .crypto import aes_encrypt, hmac_md5
from .errors import ErrorReporter
from .models import DocumentRow, UploadedFile
from .storage import RemoteStore
from .utils import TARGET_EXT, artifact_name

log = logging.getLogger(__name__)

STAGE = "upload"


def _read_file(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


async def upload_row(
    row: DocumentRow,
    staging_dir: Path,
    store: RemoteStore,
    crypto_key: str,
    *,
    ttl_days: Optional[int],
) -> UploadedFile:
    """Upload one converted file and build its result record.

    Raises on any failure; :func:`upload_files` turns that into a per-row
    failure entry.
    """
    name = artifact_name(row.key, TARGET_EXT)
    data = await asyncio.to_thread(_read_file, staging_dir / name)
    if data is None:
        raise FileNotFoundError("converted file not found")

    await asyncio.to_thread(store.put, name, data)
    if store.max_reference_days is None:
        url = await asyncio.to_thread(store.get_reference, name)
    else:
        url = await asyncio.to_thread(store.get_reference, name, ttl_days)
    if not url:
        raise ValueError("store returned an empty reference")

    uploaded = UploadedFile(
        row_id=row.id,
        hash=hmac_md5(row.verification_code, crypto_key),
        encrypted_url=aes_encrypt(url, crypto_key),
    )
    if not uploaded.hash or not uploaded.encrypted_url:
        raise ValueError("empty hash or encrypted reference")
    return uploaded


async def upload_files(
    rows: Iterable[DocumentRow],
    staging_dir: Path,
    store: RemoteStore,
    crypto_key: str,
    *,
    existing_names: Iterable[str] = (),
    ttl_days: Optional[int] = None,
    reporter: Optional[ErrorReporter] = None,
) -> list[UploadedFile]:
    """Upload the converted file of every row that has no remote artifact.

    Rows are handled one after another in input order to keep write load on
    the store bounded. A failing row is recorded on *reporter* and does not
    stop the others; the return value lists only successful uploads.
    """
    reporter = reporter or ErrorReporter()
    existing = set(existing_names)
    pending = [row for row in rows if artifact_name(row.key, TARGET_EXT) not in existing]
    uploaded: list[UploadedFile] = []

    for row in tqdm(pending, desc="Uploading", disable=not pending):
        try:
            uploaded.append(
                await upload_row(row, staging_dir, store, crypto_key, ttl_days=ttl_days)
            )
        except FileNotFoundError as exc:
            reporter.record_failure(STAGE, row.key, str(exc))
        except Exception as exc:
            reporter.record_failure(STAGE, row.key, "error while uploading file", exc)
        else:
            log.debug("Uploaded %s/%s", store.prefix, artifact_name(row.key, TARGET_EXT))

    log.info("Upload: %s of %s file(s) uploaded.", len(uploaded), len(pending))
    return uploaded
