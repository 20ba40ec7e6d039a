"""Tests for the individual reconciliation stages.

Each stage is driven directly with ``asyncio.run`` against the in-memory
store and the fake converter from ``conftest.py``.
"""

from __future__ import annotations

import asyncio
import gzip
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from docsync import (
    ConverterNotFoundError,
    CryptoError,
    DocumentRow,
    ErrorReporter,
    RemoteArtifactRef,
    RowValidationError,
    aes_decrypt,
    aes_encrypt,
    artifact_id_of,
    artifact_name,
    classify_outcome,
    clean_rtf,
    convert_staged_files,
    days_between,
    decompress_payload,
    delete_local_files,
    effective_retention_days,
    evaluate_retention,
    find_converter,
    hmac_md5,
    upload_files,
    write_staged_files,
)

from conftest import NOW, FakeStore, make_row

KEY = "s3cr3t-key"


# =========================================================================
# 1. Naming and time helpers
# =========================================================================


class TestArtifactNaming:
    def test_artifact_name_uses_id_and_extension(self):
        assert artifact_name(12) == "12.pdf"
        assert artifact_name("ab_3", "rtf") == "ab_3.rtf"

    def test_artifact_id_of_managed_names(self):
        assert artifact_id_of("12.pdf") == "12"
        assert artifact_id_of("ab_3.rtf") == "ab_3"

    @pytest.mark.parametrize(
        "name",
        ["notes.txt", "12.pdf.bak", "a-b.pdf", ".pdf", "sub/12.pdf", "12.PDF", ""],
    )
    def test_artifact_id_of_rejects_foreign_names(self, name):
        assert artifact_id_of(name) is None


class TestDaysBetween:
    def test_counts_from_calendar_date(self):
        now = datetime(2024, 3, 10, 0, 30, tzinfo=timezone.utc)
        then = datetime(2024, 3, 9, 23, 59, tzinfo=timezone.utc)
        assert days_between(now, then) == 1

    def test_same_day_is_zero(self):
        now = datetime(2024, 3, 10, 18, 0, tzinfo=timezone.utc)
        assert days_between(now, now - timedelta(hours=5)) == 0

    def test_naive_timestamps_are_utc(self):
        assert days_between(datetime(2024, 3, 10, 12), datetime(2024, 3, 3, 12)) == 7


# =========================================================================
# 2. DocumentRow validation
# =========================================================================


class TestDocumentRow:
    def test_extra_columns_are_kept_read_only(self):
        row = make_row(7, owner="alice")
        assert row.extra["owner"] == "alice"
        with pytest.raises(TypeError):
            row.extra["owner"] = "bob"  # type: ignore[index]

    def test_key_is_string_id(self):
        assert make_row(7).key == "7"

    def test_missing_column_is_rejected(self):
        with pytest.raises(RowValidationError, match="verification_code"):
            DocumentRow.from_mapping({"id": 1, "file": b""})

    def test_non_bytes_payload_is_rejected(self):
        with pytest.raises(RowValidationError, match="payload"):
            DocumentRow.from_mapping({"id": 1, "file": "text", "verification_code": "x"})

    def test_bad_id_is_rejected(self):
        with pytest.raises(RowValidationError):
            DocumentRow.from_mapping({"id": 1.5, "file": b"", "verification_code": "x"})
        with pytest.raises(RowValidationError):
            DocumentRow.from_mapping({"id": " ", "file": b"", "verification_code": "x"})

    def test_custom_column_names(self):
        row = DocumentRow.from_mapping(
            {"doc_id": "a1", "blob": bytearray(b"z"), "code": "c"},
            id_column="doc_id",
            payload_column="blob",
            verification_column="code",
        )
        assert row.id == "a1"
        assert row.payload == b"z"
        assert dict(row.extra) == {}


# =========================================================================
# 3. Staging writer
# =========================================================================


class TestCleanRtf:
    def test_strips_leading_and_trailing_noise(self):
        raw = b"\x00\x01junk{\\rtf1 body}\x00\x00  "
        assert clean_rtf(raw) == b"{\\rtf1 body}"

    def test_wraps_headerless_body(self):
        cleaned = clean_rtf(b"plain text")
        assert cleaned.startswith(b"{\\rtf1")
        assert b"plain text" in cleaned
        assert cleaned.endswith(b"}")

    def test_empty_body_is_an_error(self):
        with pytest.raises(ValueError):
            clean_rtf(b"\x00\x00")


class TestDecompressPayload:
    def test_gunzips(self):
        assert decompress_payload(gzip.compress(b"abc")) == b"abc"

    def test_invalid_gzip_raises_value_error(self):
        with pytest.raises(ValueError):
            decompress_payload(b"not gzip at all")


class TestWriteStagedFiles:
    def test_writes_only_rows_without_remote_artifact(self, staging_dir: Path):
        rows = [make_row(1), make_row(2), make_row(3)]
        count = asyncio.run(write_staged_files(rows, staging_dir, {"2.pdf"}))

        assert count == 2
        assert sorted(p.name for p in staging_dir.iterdir()) == ["1.rtf", "3.rtf"]
        assert (staging_dir / "1.rtf").read_bytes() == b"{\\rtf1 hello}"

    def test_decode_failure_skips_only_that_row(self, staging_dir: Path):
        bad = DocumentRow(id=9, payload=b"\x1f\x8b broken", verification_code="x")
        reporter = ErrorReporter()
        count = asyncio.run(
            write_staged_files([make_row(1), bad, make_row(2)], staging_dir, set(), reporter=reporter)
        )

        assert count == 2
        assert not (staging_dir / "9.rtf").exists()
        assert reporter.failed_items("staging") == {"9"}

    def test_returns_zero_when_everything_exists(self, staging_dir: Path):
        count = asyncio.run(write_staged_files([make_row(1)], staging_dir, {"1.pdf"}))
        assert count == 0
        assert list(staging_dir.iterdir()) == []

    def test_creates_missing_staging_dir(self, tmp_path: Path):
        target = tmp_path / "nested" / "files"
        assert asyncio.run(write_staged_files([make_row(1)], target, set())) == 1
        assert (target / "1.rtf").exists()


# =========================================================================
# 4. Format converter
# =========================================================================


class TestClassifyOutcome:
    def test_target_present_wins_over_diagnostics(self):
        outcome = classify_outcome("1.rtf", True, "Warning: font missing\n")
        assert outcome.success is True
        assert outcome.pdf_created is True
        assert outcome.error is None
        assert outcome.warning == "Warning: font missing"

    def test_target_absent_with_diagnostics(self):
        outcome = classify_outcome("1.rtf", False, "Error: boom")
        assert outcome.success is False
        assert outcome.error == "Error: boom"

    def test_target_absent_without_diagnostics(self):
        outcome = classify_outcome("1.rtf", False, "  ")
        assert outcome.success is False
        assert outcome.error == "no output produced"


class TestFindConverter:
    def test_missing_binary_is_fatal(self, monkeypatch):
        monkeypatch.setenv("PATH", "")
        with pytest.raises(ConverterNotFoundError):
            find_converter("soffice-that-does-not-exist")

    def test_resolves_fake_binary(self, fake_converter):
        assert find_converter("soffice") == fake_converter


class TestConvertStagedFiles:
    def test_each_file_gets_its_own_outcome(self, staging_dir: Path, fake_converter):
        (staging_dir / "1.rtf").write_bytes(b"{\\rtf1 ok}")
        (staging_dir / "2.rtf").write_bytes(b"{\\rtf1 WARN}")
        (staging_dir / "3.rtf").write_bytes(b"{\\rtf1 FAIL_LOUD}")
        (staging_dir / "4.rtf").write_bytes(b"{\\rtf1 FAIL_SILENT}")
        reporter = ErrorReporter()

        outcomes = asyncio.run(
            convert_staged_files(staging_dir, converter=fake_converter, reporter=reporter)
        )
        by_name = {o.file_name: o for o in outcomes}

        assert len(outcomes) == 4
        assert by_name["1.rtf"].success and by_name["1.rtf"].warning is None
        assert by_name["2.rtf"].success
        assert "font" in by_name["2.rtf"].warning
        assert not by_name["3.rtf"].success
        assert "could not be loaded" in by_name["3.rtf"].error
        assert not by_name["4.rtf"].success
        assert by_name["4.rtf"].error == "no output produced"

        assert (staging_dir / "1.pdf").exists()
        assert (staging_dir / "2.pdf").exists()
        assert reporter.failed_items("conversion") == {"3", "4"}
        assert [w.item for w in reporter.warnings] == ["2"]

    def test_empty_directory_yields_no_outcomes(self, staging_dir: Path, fake_converter):
        assert asyncio.run(convert_staged_files(staging_dir, converter=fake_converter)) == []

    def test_unstartable_converter_fails_per_file(self, staging_dir: Path):
        (staging_dir / "1.rtf").write_bytes(b"{\\rtf1 ok}")
        outcomes = asyncio.run(
            convert_staged_files(staging_dir, converter=str(staging_dir / "no-such-binary"))
        )
        assert len(outcomes) == 1
        assert outcomes[0].success is False
        assert "could not start converter" in outcomes[0].error

    def test_hung_converter_is_killed_after_timeout(self, staging_dir: Path, fake_converter):
        (staging_dir / "1.rtf").write_bytes(b"{\\rtf1 SLOW}")
        reporter = ErrorReporter()

        outcomes = asyncio.run(
            convert_staged_files(
                staging_dir, converter=fake_converter, reporter=reporter, timeout_s=0.3
            )
        )

        assert outcomes[0].success is False
        assert "timed out" in outcomes[0].error
        assert not (staging_dir / "1.pdf").exists()
        assert reporter.failed_items("conversion") == {"1"}

    def test_nonzero_exit_without_stderr_reports_status(self, staging_dir: Path, fake_converter):
        (staging_dir / "1.rtf").write_bytes(b"{\\rtf1 FAIL_QUIET}")

        outcomes = asyncio.run(convert_staged_files(staging_dir, converter=fake_converter))

        assert outcomes[0].success is False
        assert outcomes[0].error == "converter exited with status 3"

    def test_leftover_target_does_not_count_as_output(self, staging_dir: Path, fake_converter):
        (staging_dir / "1.rtf").write_bytes(b"{\\rtf1 FAIL_SILENT}")
        (staging_dir / "1.pdf").write_bytes(b"%PDF- from an earlier run")

        outcomes = asyncio.run(convert_staged_files(staging_dir, converter=fake_converter))

        assert outcomes[0].success is False
        assert outcomes[0].error == "no output produced"
        assert not (staging_dir / "1.pdf").exists()


class TestDeleteLocalFiles:
    def test_removes_only_matching_extension(self, staging_dir: Path):
        (staging_dir / "1.rtf").write_bytes(b"a")
        (staging_dir / "2.rtf").write_bytes(b"b")
        (staging_dir / "1.pdf").write_bytes(b"c")

        assert delete_local_files(staging_dir, "rtf") == 2
        assert [p.name for p in staging_dir.iterdir()] == ["1.pdf"]

    def test_missing_folder_is_a_no_op(self, tmp_path: Path):
        assert delete_local_files(tmp_path / "absent", "pdf") == 0


# =========================================================================
# 5. Retention evaluator
# =========================================================================


def _evaluate(store: FakeStore, row_ids, retention_days=7, reporter=None):
    return asyncio.run(
        evaluate_retention(
            store.list_artifacts(),
            row_ids,
            retention_days,
            store,
            reporter=reporter,
            now=NOW,
        )
    )


class TestEvaluateRetention:
    def test_stale_orphan_is_deleted(self, days_ago):
        store = FakeStore({"3.pdf": days_ago(30)})
        assert _evaluate(store, ["1"]) == ["3.pdf"]
        assert store.deletes == ["3.pdf"]

    def test_referenced_artifact_is_never_deleted(self, days_ago):
        store = FakeStore({"1.pdf": days_ago(400), "2.pdf": days_ago(30)})
        assert _evaluate(store, [1, "2"]) == []
        assert store.deletes == []

    def test_fresh_orphan_is_kept(self, days_ago):
        store = FakeStore({"3.pdf": days_ago(6)})
        assert _evaluate(store, ["1"]) == []

    def test_age_equal_to_window_is_stale(self, days_ago):
        store = FakeStore({"3.pdf": days_ago(7)})
        assert _evaluate(store, ["1"]) == ["3.pdf"]

    def test_foreign_names_are_skipped(self, days_ago):
        store = FakeStore({"readme.txt": days_ago(90), "x-y.pdf": days_ago(90)})
        reporter = ErrorReporter()
        assert _evaluate(store, [], reporter=reporter) == []
        assert store.deletes == []
        assert not reporter.has_failures

    def test_delete_failure_is_isolated(self, days_ago):
        store = FakeStore({"3.pdf": days_ago(30), "4.pdf": days_ago(30), "5.pdf": days_ago(30)})
        store.fail_delete.add("4.pdf")
        reporter = ErrorReporter()

        deleted = _evaluate(store, ["1"], reporter=reporter)

        assert deleted == ["3.pdf", "5.pdf"]
        assert reporter.failed_items("retention") == {"4.pdf"}

    def test_unreadable_age_means_not_outdated(self, days_ago):
        store = FakeStore({"3.pdf": days_ago(30), "4.pdf": days_ago(30)})
        store.fail_metadata.add("3.pdf")
        artifacts = [RemoteArtifactRef(name="3.pdf"), RemoteArtifactRef(name="4.pdf")]

        reporter = ErrorReporter()

        deleted = asyncio.run(
            evaluate_retention(artifacts, [], 7, store, reporter=reporter, now=NOW)
        )

        assert deleted == ["4.pdf"]
        assert "3.pdf" in store.objects
        assert [(w.stage, w.item) for w in reporter.warnings] == [("retention", "3.pdf")]
        assert "timed out" in reporter.warnings[0].reason
        assert not reporter.has_failures

    def test_rtf_artifacts_are_managed_too(self, days_ago):
        store = FakeStore({"3.rtf": days_ago(30)})
        assert _evaluate(store, []) == ["3.rtf"]


class TestEffectiveRetentionDays:
    def test_unbounded_store_keeps_configured_window(self):
        assert effective_retention_days(30, None) == 30

    def test_bounded_store_clamps(self):
        assert effective_retention_days(30, 7) == 7
        assert effective_retention_days(3, 7) == 3


# =========================================================================
# 6. Upload sequencer
# =========================================================================


def _stage_pdfs(staging_dir: Path, *ids) -> None:
    for row_id in ids:
        (staging_dir / f"{row_id}.pdf").write_bytes(b"%PDF-1.4 " + str(row_id).encode())


class TestUploadFiles:
    def test_missing_local_file_does_not_block_others(self, staging_dir: Path, fake_store):
        rows = [make_row("A"), make_row("B"), make_row("C")]
        _stage_pdfs(staging_dir, "B", "C")
        reporter = ErrorReporter()

        uploaded = asyncio.run(
            upload_files(rows, staging_dir, fake_store, KEY, reporter=reporter)
        )

        assert [u.row_id for u in uploaded] == ["B", "C"]
        assert fake_store.puts == ["B.pdf", "C.pdf"]
        assert reporter.failed_items("upload") == {"A"}

    def test_upload_records_are_encrypted(self, staging_dir: Path, fake_store):
        row = make_row(5, code="VERIFY-5")
        _stage_pdfs(staging_dir, 5)

        (uploaded,) = asyncio.run(upload_files([row], staging_dir, fake_store, KEY))

        assert uploaded.hash == hmac_md5("VERIFY-5", KEY)
        assert aes_decrypt(uploaded.encrypted_url, KEY) == (
            "https://files.example.test/docs/5.pdf?token=t-5.pdf"
        )
        assert uploaded.to_dict()["_id"] == 5

    def test_rows_with_existing_artifact_are_skipped(self, staging_dir: Path, fake_store):
        _stage_pdfs(staging_dir, 1, 2)
        uploaded = asyncio.run(
            upload_files(
                [make_row(1), make_row(2)],
                staging_dir,
                fake_store,
                KEY,
                existing_names={"1.pdf"},
            )
        )
        assert [u.row_id for u in uploaded] == [2]
        assert fake_store.puts == ["2.pdf"]

    def test_store_failure_is_isolated(self, staging_dir: Path, fake_store):
        _stage_pdfs(staging_dir, 1, 2)
        fake_store.fail_put.add("1.pdf")
        reporter = ErrorReporter()

        uploaded = asyncio.run(
            upload_files([make_row(1), make_row(2)], staging_dir, fake_store, KEY, reporter=reporter)
        )

        assert [u.row_id for u in uploaded] == [2]
        (failure,) = reporter.failures_for("upload")
        assert failure.item == "1"

    def test_ttl_bounded_store_gets_ttl(self, staging_dir: Path):
        store = FakeStore(max_reference_days=7)
        _stage_pdfs(staging_dir, 1)

        asyncio.run(upload_files([make_row(1)], staging_dir, store, KEY, ttl_days=5))

        assert store.reference_calls == [("1.pdf", 5)]

    def test_unbounded_store_gets_no_ttl(self, staging_dir: Path, fake_store):
        _stage_pdfs(staging_dir, 1)
        asyncio.run(upload_files([make_row(1)], staging_dir, fake_store, KEY, ttl_days=5))
        assert fake_store.reference_calls == [("1.pdf", None)]


# =========================================================================
# 7. Crypto
# =========================================================================


class TestCrypto:
    def test_hmac_md5_known_vector(self):
        digest = hmac_md5("The quick brown fox jumps over the lazy dog", "key")
        assert digest == "80070713463e7749b90c2dc24911e275"

    def test_aes_uses_openssl_salted_format(self):
        blob = aes_encrypt("https://example.test/a.pdf", KEY)
        assert blob.startswith("U2FsdGVkX1")
        assert aes_decrypt(blob, KEY) == "https://example.test/a.pdf"

    def test_aes_is_salted(self):
        assert aes_encrypt("same", KEY) != aes_encrypt("same", KEY)

    def test_aes_wrong_key(self):
        blob = aes_encrypt("https://example.test/a.pdf", KEY)
        with pytest.raises(CryptoError):
            aes_decrypt(blob, "other-key")

    def test_empty_key_is_rejected(self):
        with pytest.raises(CryptoError):
            hmac_md5("x", "")
        with pytest.raises(CryptoError):
            aes_encrypt("x", "")
