# tests/engine/test_ledger.py
"""Tests for the attempt ledger."""

import pytest

from imigrate.contracts import AttemptReason, InsertOutcome, Job, JobMode, PropertyMapping, RowStatus, StorageError
from imigrate.core.store import Persistence
from imigrate.engine.ledger import AttemptLedger
from tests.fixtures.environments import DEST_ENV, SOURCE_ENV


@pytest.fixture
def job(persistence: Persistence) -> Job:
    return persistence.create_job(
        name="Contacts",
        mode=JobMode.QUERY,
        source_environment_id=SOURCE_ENV.id,
        source_query_path="$/Migration/AllContacts",
        dest_environment_id=DEST_ENV.id,
        dest_entity_type="CsContact",
        mappings=[PropertyMapping("ID", "LegacyId")],
    )


@pytest.fixture
def ledger(persistence: Persistence) -> AttemptLedger:
    return AttemptLedger(persistence)


class TestRecordInitial:
    def test_success_creates_row_and_attempt(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        row = ledger.record_initial(job.id, 0, "blob", InsertOutcome.succeeded(["1001"]))

        attempts = persistence.get_row_attempts(row.id)
        assert row.status == RowStatus.SUCCESS
        assert row.identity_elements == ["1001"]
        assert [(a.reason, a.success, a.identity_elements) for a in attempts] == [(AttemptReason.INITIAL, True, ["1001"])]

    def test_failure_keeps_message(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        row = ledger.record_initial(job.id, 3, "blob", InsertOutcome.failed("HTTP 400: bad"))

        [attempt] = persistence.get_row_attempts(row.id)
        assert row.status == RowStatus.FAILED
        assert row.identity_elements is None
        assert attempt.error_message == "HTTP 400: bad"

    def test_duplicate_index_leaves_no_orphan_attempt(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        ledger.record_initial(job.id, 0, "blob", InsertOutcome.succeeded(["1"]))

        with pytest.raises(StorageError):
            ledger.record_initial(job.id, 0, "blob", InsertOutcome.succeeded(["2"]))

        page = persistence.get_job_rows(job.id)
        assert page.total == 1
        assert page.rows[0].attempt_count == 1


class TestRecordRetry:
    def test_retry_success_flips_status(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        row = ledger.record_initial(job.id, 0, "blob", InsertOutcome.failed("HTTP 503"))

        attempt = ledger.record_retry(row, AttemptReason.AUTO_RETRY, InsertOutcome.succeeded(["1001"]))

        stored = persistence.get_row(row.id)
        assert attempt.sequence == 2
        assert stored.status == RowStatus.SUCCESS
        assert stored.identity_elements == ["1001"]

    def test_status_tracks_latest_attempt(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        row = ledger.record_initial(job.id, 0, "blob", InsertOutcome.failed("first"))
        ledger.record_retry(row, AttemptReason.AUTO_RETRY, InsertOutcome.failed("second"))
        ledger.record_retry(row, AttemptReason.MANUAL_RETRY, InsertOutcome.failed("third"))

        attempts = persistence.get_row_attempts(row.id)
        summary = persistence.get_row_summary(row.id)
        assert [a.reason for a in attempts] == [AttemptReason.INITIAL, AttemptReason.AUTO_RETRY, AttemptReason.MANUAL_RETRY]
        assert summary.row.status == RowStatus.FAILED
        assert summary.latest_error == "third"
        assert summary.attempt_count == 3

    def test_initial_reason_rejected(self, ledger: AttemptLedger, persistence: Persistence, job: Job) -> None:
        row = ledger.record_initial(job.id, 0, "blob", InsertOutcome.failed("x"))

        with pytest.raises(ValueError, match="retry reason"):
            ledger.record_retry(row, AttemptReason.INITIAL, InsertOutcome.failed("y"))
