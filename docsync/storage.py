"""Remote artifact stores: Firebase Storage and S3-compatible buckets.

Every store method is blocking; async callers offload them with
``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import quote, urlparse

from .config import StorageConfig, require_config
from .errors import ConfigError, RemoteStoreError
from .models import ArtifactMetadata, RemoteArtifactRef, RemoteState

log = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
FIREBASE_TOKEN_KEY = "firebaseStorageDownloadTokens"
FIREBASE_DOWNLOAD_URL = "https://firebasestorage.googleapis.com/v0/b/{bucket}/o/{path}?alt=media&token={token}"

# presigned GET URLs cannot outlive seven days (SigV4 limit)
S3_MAX_REFERENCE_DAYS = 7


class RemoteStore(Protocol):
    prefix: str
    max_reference_days: Optional[int]

    def list_artifacts(self) -> list[RemoteArtifactRef]:
        """List the objects directly under ``prefix``, names relative to it."""

    def put(self, name: str, data: bytes) -> None:
        ...

    def get_reference(self, name: str, ttl_days: Optional[int] = None) -> str:
        ...

    def delete(self, name: str) -> None:
        ...

    def get_metadata(self, name: str) -> ArtifactMetadata:
        ...


def _relative_name(key: str, prefix: str) -> Optional[str]:
    """Strip ``<prefix>/`` from an object key; ``None`` for nested or empty names."""
    lead = f"{prefix}/" if prefix else ""
    if not key.startswith(lead):
        return None
    name = key[len(lead) :]
    if not name or "/" in name:
        return None
    return name


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Firebase Storage (google-cloud-storage)
# ---------------------------------------------------------------------------


class FirebaseStore:
    """Firebase Storage bucket with never-expiring download-token URLs."""

    max_reference_days: Optional[int] = None

    def __init__(self, bucket: Any, prefix: str) -> None:
        self._bucket = bucket
        self.prefix = prefix

    @classmethod
    def from_config(cls, config: StorageConfig) -> FirebaseStore:
        from google.cloud import storage
        from google.oauth2 import service_account

        opts = config.options
        bucket_name = opts.get("bucket") or opts.get("storageBucket")
        if not bucket_name:
            raise ConfigError("Missing required config: storage.bucket")

        info = opts.get("service_account")
        if info is None and opts.get("service_account_file"):
            path = Path(opts["service_account_file"])
            try:
                info = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise ConfigError(f"Could not read service account file {path}: {exc}") from exc
        if not isinstance(info, Mapping):
            raise ConfigError("Missing required config: storage.service_account")

        credentials = service_account.Credentials.from_service_account_info(dict(info))
        client = storage.Client(project=info.get("project_id"), credentials=credentials)
        log.info('Firebase: using bucket "%s" under "%s/"', bucket_name, config.prefix)
        return cls(client.bucket(bucket_name), config.prefix)

    def _path(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def list_artifacts(self) -> list[RemoteArtifactRef]:
        blobs = self._bucket.client.list_blobs(
            self._bucket, prefix=f"{self.prefix}/", delimiter="/"
        )
        artifacts: list[RemoteArtifactRef] = []
        for blob in blobs:
            name = _relative_name(blob.name, self.prefix)
            if name is None:
                continue
            artifacts.append(
                RemoteArtifactRef(name=name, last_modified=_as_utc(blob.updated), size=blob.size)
            )
        return artifacts

    def put(self, name: str, data: bytes) -> None:
        blob = self._bucket.blob(self._path(name))
        blob.metadata = {FIREBASE_TOKEN_KEY: str(uuid.uuid4())}
        blob.upload_from_string(data, content_type=PDF_CONTENT_TYPE)

    def get_reference(self, name: str, ttl_days: Optional[int] = None) -> str:
        path = self._path(name)
        blob = self._bucket.get_blob(path)
        if blob is None:
            raise FileNotFoundError(f"{path} not found in bucket {self._bucket.name}")
        tokens = (blob.metadata or {}).get(FIREBASE_TOKEN_KEY, "")
        token = tokens.split(",")[0] if tokens else ""
        if not token:
            token = str(uuid.uuid4())
            blob.metadata = {**(blob.metadata or {}), FIREBASE_TOKEN_KEY: token}
            blob.patch()
        return FIREBASE_DOWNLOAD_URL.format(
            bucket=self._bucket.name, path=quote(path, safe=""), token=token
        )

    def delete(self, name: str) -> None:
        self._bucket.blob(self._path(name)).delete()

    def get_metadata(self, name: str) -> ArtifactMetadata:
        path = self._path(name)
        blob = self._bucket.get_blob(path)
        if blob is None:
            raise FileNotFoundError(f"{path} not found in bucket {self._bucket.name}")
        return ArtifactMetadata(updated=_as_utc(blob.updated))


# ---------------------------------------------------------------------------
# S3 / MinIO (boto3)
# ---------------------------------------------------------------------------


def resolve_endpoint(uri: str, port: Optional[int] = None) -> tuple[str, int, bool]:
    """Return ``(host, port, use_ssl)`` for an endpoint URI.

    The port comes from *port*, then the URI, then 443 for https and 9000
    (the MinIO default) for http.
    """
    parsed = urlparse(uri if "://" in uri else f"http://{uri}")
    if not parsed.hostname:
        raise ConfigError(f"Invalid storage endpoint URI: {uri!r}")
    use_ssl = parsed.scheme == "https"
    if port:
        resolved = int(port)
    elif parsed.port:
        resolved = parsed.port
    else:
        resolved = 443 if use_ssl else 9000
    return parsed.hostname, resolved, use_ssl


class S3Store:
    """S3-compatible bucket with presigned, time-limited references."""

    max_reference_days: Optional[int] = S3_MAX_REFERENCE_DAYS

    def __init__(self, client: Any, bucket: str, prefix: str) -> None:
        self._client = client
        self.bucket = bucket
        self.prefix = prefix

    @classmethod
    def from_config(cls, config: StorageConfig) -> S3Store:
        import boto3
        from botocore.config import Config

        opts = config.options
        uri = require_config(opts, "uri", "storage")
        bucket = require_config(opts, "bucket", "storage")
        host, port, use_ssl = resolve_endpoint(str(uri), opts.get("port"))
        scheme = "https" if use_ssl else "http"

        client = boto3.client(
            "s3",
            endpoint_url=f"{scheme}://{host}:{port}",
            aws_access_key_id=require_config(opts, "user", "storage"),
            aws_secret_access_key=require_config(opts, "password", "storage"),
            region_name=opts.get("region", "us-east-1"),
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        log.info('S3: using %s:%s bucket "%s" under "%s/"', host, port, bucket, config.prefix)
        return cls(client, str(bucket), config.prefix)

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def list_artifacts(self) -> list[RemoteArtifactRef]:
        paginator = self._client.get_paginator("list_objects_v2")
        artifacts: list[RemoteArtifactRef] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}/", Delimiter="/"):
            for obj in page.get("Contents", []):
                name = _relative_name(obj["Key"], self.prefix)
                if name is None:
                    continue
                artifacts.append(
                    RemoteArtifactRef(
                        name=name,
                        last_modified=_as_utc(obj.get("LastModified")),
                        size=obj.get("Size"),
                    )
                )
        return artifacts

    def put(self, name: str, data: bytes) -> None:
        self._client.put_object(
            Bucket=self.bucket, Key=self._key(name), Body=data, ContentType=PDF_CONTENT_TYPE
        )

    def get_reference(self, name: str, ttl_days: Optional[int] = None) -> str:
        days = S3_MAX_REFERENCE_DAYS if ttl_days is None else ttl_days
        days = max(1, min(days, S3_MAX_REFERENCE_DAYS))
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": self._key(name)},
            ExpiresIn=days * 86400,
        )

    def delete(self, name: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=self._key(name))

    def get_metadata(self, name: str) -> ArtifactMetadata:
        head = self._client.head_object(Bucket=self.bucket, Key=self._key(name))
        return ArtifactMetadata(updated=_as_utc(head.get("LastModified")))


# ---------------------------------------------------------------------------
# Bootstrapping
# ---------------------------------------------------------------------------


def build_store(config: StorageConfig) -> RemoteStore:
    """Create the store named by ``config.backend``."""
    try:
        if config.backend == "firebase":
            return FirebaseStore.from_config(config)
        if config.backend == "s3":
            return S3Store.from_config(config)
    except ConfigError:
        raise
    except Exception as exc:
        raise RemoteStoreError(f"Could not initialize {config.backend} storage: {exc}") from exc
    raise ConfigError(f"Unknown storage backend: {config.backend!r}")


def load_remote_state(store: RemoteStore) -> RemoteState:
    """List the store once; any failure here is fatal for the run."""
    try:
        artifacts = store.list_artifacts()
    except Exception as exc:
        raise RemoteStoreError(f"Error listing remote artifacts under {store.prefix!r}: {exc}") from exc
    log.info('Found %s remote artifact(s) under "%s/"', len(artifacts), store.prefix)
    return RemoteState(artifacts=tuple(artifacts), prefix=store.prefix)
