"""Shared fixtures for the reconciliation test suite.

Remote storage is an in-memory fake and the converter is a small shell
script standing in for ``soffice``; no network or LibreOffice is needed.
"""

from __future__ import annotations

import gzip
import logging
import stat
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from docsync import ArtifactMetadata, DocumentRow, RemoteArtifactRef, RemoteState

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

NOW = datetime.now(timezone.utc)

FAKE_SOFFICE = """#!/bin/sh
outdir=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    --outdir) outdir="$2"; shift 2 ;;
    --convert-to) shift 2 ;;
    --headless) shift ;;
    *) src="$1"; shift ;;
  esac
done
name=$(basename "$src")
stem="${name%.*}"
if grep -q SLOW "$src"; then exec sleep 30; fi
if grep -q FAIL_SILENT "$src"; then exit 0; fi
if grep -q FAIL_QUIET "$src"; then exit 3; fi
if grep -q FAIL_LOUD "$src"; then echo "Error: source file could not be loaded" >&2; exit 1; fi
if grep -q WARN "$src"; then echo "Warning: failed to load font Arial" >&2; fi
cp "$src" "$outdir/$stem.pdf"
"""


def make_row(row_id, body: bytes = b"{\\rtf1 hello}", code: str = "VC-1", **extra) -> DocumentRow:
    """Build a row whose payload is the gzip of *body*."""
    return DocumentRow.from_mapping(
        {"id": row_id, "file": gzip.compress(body), "verification_code": code, **extra}
    )


class FakeStore:
    """In-memory stand-in for a remote store.

    ``max_reference_days=None`` behaves like Firebase (permanent URLs);
    a number behaves like S3 (presigned URLs).
    """

    def __init__(
        self,
        objects: Optional[dict[str, datetime]] = None,
        *,
        prefix: str = "docs",
        max_reference_days: Optional[int] = None,
    ) -> None:
        self.prefix = prefix
        self.max_reference_days = max_reference_days
        self.objects: dict[str, tuple[bytes, datetime]] = {
            name: (b"", updated) for name, updated in (objects or {}).items()
        }
        self.fail_put: set[str] = set()
        self.fail_delete: set[str] = set()
        self.fail_metadata: set[str] = set()
        self.puts: list[str] = []
        self.deletes: list[str] = []
        self.reference_calls: list[tuple[str, Optional[int]]] = []

    def list_artifacts(self) -> list[RemoteArtifactRef]:
        return [
            RemoteArtifactRef(name=name, last_modified=updated, size=len(data))
            for name, (data, updated) in self.objects.items()
        ]

    def put(self, name: str, data: bytes) -> None:
        if name in self.fail_put:
            raise ConnectionError(f"put {name} refused")
        self.puts.append(name)
        self.objects[name] = (data, NOW)

    def get_reference(self, name: str, ttl_days: Optional[int] = None) -> str:
        self.reference_calls.append((name, ttl_days))
        if self.max_reference_days is None:
            return f"https://files.example.test/{self.prefix}/{name}?token=t-{name}"
        return f"https://s3.example.test/{self.prefix}/{name}?X-Amz-Expires={ttl_days * 86400}"

    def delete(self, name: str) -> None:
        if name in self.fail_delete:
            raise PermissionError(f"delete {name} refused")
        self.deletes.append(name)
        self.objects.pop(name, None)

    def get_metadata(self, name: str) -> ArtifactMetadata:
        if name in self.fail_metadata:
            raise TimeoutError(f"metadata {name} timed out")
        return ArtifactMetadata(updated=self.objects[name][1])

    def state(self) -> RemoteState:
        return RemoteState(artifacts=tuple(self.list_artifacts()), prefix=self.prefix)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    d = tmp_path / "files"
    d.mkdir()
    return d


@pytest.fixture
def fake_converter(tmp_path: Path, monkeypatch) -> str:
    """Install a fake ``soffice`` on PATH and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "soffice"
    script.write_text(FAKE_SOFFICE, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("PATH", f"{bin_dir}:/usr/bin:/bin")
    return str(script)


@pytest.fixture
def days_ago():
    def _days_ago(n: int) -> datetime:
        return NOW - timedelta(days=n)

    return _days_ago
