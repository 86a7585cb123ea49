# src/imigrate/engine/orchestrator.py
"""Job orchestrator: state machine, run protocol, retries and queries.

States: queued → running → {completed, failed, partial, cancelled}.

- ``failed``: the run could not start meaningfully (pre-flight check or
  first page failed, or an unexpected error). A failed job with no rows
  can be run again. Once rows exist they are the job's history: the job
  cannot be re-run, only its failed rows retried.
- ``partial``: the run finished but some rows or pages failed. Failed rows
  are retried from their stored payloads with ``retry_failed_rows`` or
  ``retry_single_row``; the source is not extracted again.
- ``completed``: every page fetched and every row inserted.
- ``cancelled``: stopped by the user before natural completion.

``run_job`` performs the pre-flight check synchronously and then hands the
run to the supervisor; everything after that is observable only through
the query operations.
"""

from __future__ import annotations

import functools
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from imigrate.contracts import (
    RESTRICTED_DESTINATION_PROPERTIES,
    Attempt,
    AttemptReason,
    DecryptionError,
    Environment,
    ImigrateError,
    InsertOutcome,
    InvalidJobStateError,
    Job,
    JobAlreadyRunningError,
    JobMode,
    JobStatus,
    JobWithCounts,
    RetryResult,
    RetrySummary,
    Row,
    RowNotRetryableError,
    RowPage,
    RowStatus,
    ValidationFailedError,
)
from imigrate.core.store._helpers import now
from imigrate.engine.codec import RowCodec, extract_identity, transform_row
from imigrate.engine.extractor import PAGE_SIZE, BatchExtractor, generate_offsets
from imigrate.engine.ledger import AttemptLedger
from imigrate.engine.pool import BoundedDispatcher, EnvironmentLimits
from imigrate.engine.supervisor import JobSupervisor

if TYPE_CHECKING:
    from imigrate.contracts import Page
    from imigrate.core.config import JobSpec
    from imigrate.core.security.vault import CredentialVault
    from imigrate.core.store import Persistence
    from imigrate.imis import ImisClient

logger = structlog.get_logger(__name__)

# Statuses from which run_job may start a run
RUNNABLE_STATUSES: tuple[JobStatus, ...] = (JobStatus.QUEUED, JobStatus.FAILED)


@dataclass(frozen=True)
class _RunContext:
    job: Job
    source: Environment
    destination: Environment
    cancel_requested: threading.Event


class MigrationOrchestrator:
    """Creates, runs, retries and reports on migration jobs.

    Example:
        orchestrator = MigrationOrchestrator(persistence, vault, client)
        job_id = orchestrator.create_job(spec)
        orchestrator.run_job(job_id)            # returns immediately
        ...
        status = orchestrator.get_job_with_counts(job_id)
    """

    def __init__(
        self,
        persistence: Persistence,
        vault: CredentialVault,
        client: ImisClient,
        *,
        supervisor: JobSupervisor | None = None,
        limits: EnvironmentLimits | None = None,
        page_size: int = PAGE_SIZE,
    ) -> None:
        self._persistence = persistence
        self._vault = vault
        self._client = client
        self._supervisor = supervisor or JobSupervisor()
        self._limits = limits or EnvironmentLimits()
        self._page_size = page_size
        self._codec = RowCodec(vault)
        self._ledger = AttemptLedger(persistence)

    # =========================================================================
    # Job lifecycle
    # =========================================================================

    def create_job(self, spec: JobSpec) -> str:
        """Store a new ``queued`` job. Raises EnvironmentNotFoundError for unknown environments."""
        self._persistence.get_environment_by_id(spec.source_environment_id)
        self._persistence.get_environment_by_id(spec.dest_environment_id)
        job = self._persistence.create_job(
            name=spec.name,
            mode=spec.mode,
            source_environment_id=spec.source_environment_id,
            source_query_path=spec.source_query_path if spec.mode == JobMode.QUERY else None,
            source_entity_type=spec.source_entity_type if spec.mode == JobMode.DATASOURCE else None,
            dest_environment_id=spec.dest_environment_id,
            dest_entity_type=spec.dest_entity_type,
            mappings=[m.to_mapping() for m in spec.mappings],
        )
        logger.info("Job created", job_id=job.id, name=job.name, mode=job.mode.value)
        return job.id

    def run_job(self, job_id: str) -> None:
        """Validate the job and start it in the background.

        Raises:
            JobNotFoundError: No such job
            JobAlreadyRunningError: The job is already running
            InvalidJobStateError: The job has already finished, or failed
                after inserting rows
            ValidationFailedError: Pre-flight check failed (job is now ``failed``)
            MissingCredentialsError: A password is not resident (job is now ``failed``)
        """
        job = self._persistence.get_job(job_id)
        if job.status == JobStatus.RUNNING or self._supervisor.is_active(job_id):
            raise JobAlreadyRunningError(job_id)
        if job.status not in RUNNABLE_STATUSES:
            raise InvalidJobStateError(job_id, job.status, "run")

        cancel_requested = self._supervisor.claim(job_id)
        claimed = False
        try:
            if job.status == JobStatus.FAILED and self._persistence.get_job_counts(job_id).processed:
                raise InvalidJobStateError(
                    job_id, job.status, "run", "rows were already inserted; retry its failed rows instead"
                )
            source = self._persistence.get_environment_by_id(job.source_environment_id)
            destination = self._persistence.get_environment_by_id(job.dest_environment_id)
            identity_field_names = self._preflight(job, source, destination)
            if not self._persistence.claim_job(job_id, from_statuses=RUNNABLE_STATUSES, identity_field_names=identity_field_names):
                raise JobAlreadyRunningError(job_id)
            claimed = True
        except (JobAlreadyRunningError, InvalidJobStateError):
            raise
        except ImigrateError as e:
            logger.warning("Job failed pre-flight", job_id=job_id, error=str(e))
            self._persistence.update_job_status(job_id, JobStatus.FAILED, error_message=str(e), completed_at=now())
            raise
        finally:
            if not claimed:
                self._supervisor.release(job_id)

        context = _RunContext(
            job=self._persistence.get_job(job_id),
            source=source,
            destination=destination,
            cancel_requested=cancel_requested,
        )
        self._supervisor.submit(
            job_id,
            functools.partial(self._execute, context),
            on_error=functools.partial(self._record_run_error, job_id),
        )
        logger.info("Job started", job_id=job_id)

    def cancel_job(self, job_id: str) -> None:
        """Stop a job cooperatively; rows already dispatched still finish.

        A queued job, or one left ``running`` by a process that died, is
        cancelled immediately. Finished jobs are left as they are.
        """
        job = self._persistence.get_job(job_id)
        if self._supervisor.cancel(job_id):
            logger.info("Cancellation requested", job_id=job_id)
            return
        if job.status in (JobStatus.QUEUED, JobStatus.RUNNING):
            self._persistence.update_job_status(job_id, JobStatus.CANCELLED, completed_at=now())
            logger.info("Job cancelled", job_id=job_id)

    def is_running(self, job_id: str) -> bool:
        """True while a run of the job is active in this process."""
        return self._supervisor.is_active(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Block until a background run of the job finishes, then return the job."""
        self._supervisor.wait(job_id, timeout)
        return self._persistence.get_job(job_id)

    def delete_job(self, job_id: str) -> None:
        if self._supervisor.is_active(job_id):
            raise JobAlreadyRunningError(job_id)
        self._persistence.delete_job(job_id)
        logger.info("Job deleted", job_id=job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._supervisor.shutdown(wait=wait, cancel_running=not wait)

    # =========================================================================
    # Pre-flight
    # =========================================================================

    def _preflight(self, job: Job, source: Environment, destination: Environment) -> list[str]:
        """Check credentials, mapping and both schemas. Returns identity field names."""
        self._vault.require_password(source.id)
        self._vault.require_password(destination.id)

        problems: list[str] = []
        mapped = [m for m in job.mappings if m.destination_property is not None]
        if not mapped:
            problems.append("No source column is mapped to a destination property")

        definition = self._client.get_entity_definition(destination, job.dest_entity_type)
        known = definition.property_names
        seen: set[str] = set()
        for mapping in mapped:
            target = mapping.destination_property
            assert target is not None
            if target in RESTRICTED_DESTINATION_PROPERTIES:
                problems.append(f"'{target}' is maintained by iMIS and cannot be written")
            elif target not in known:
                problems.append(f"'{target}' is not a property of {job.dest_entity_type}")
            if target in seen:
                problems.append(f"'{target}' is mapped more than once")
            seen.add(target)

        unmapped_required = [p.name for p in definition.properties if p.required and not p.is_identity and p.name not in seen]
        if unmapped_required:
            logger.warning("Required destination properties are not mapped", job_id=job.id, properties=unmapped_required)

        problems.extend(self._check_source_columns(job, source))
        if problems:
            raise ValidationFailedError(problems)
        return definition.identity_field_names

    def _check_source_columns(self, job: Job, source: Environment) -> list[str]:
        if job.mode == JobMode.QUERY:
            query = self._client.get_query_definition(source, job.source_name)
            if query is None:
                return [f"Query not found: {job.source_name}"]
            columns = set(query.properties)
        else:
            columns = self._client.get_entity_definition(source, job.source_name).property_names
        if not columns:
            # Nothing to check against; the server didn't describe its columns
            return []
        return [f"Source column '{m.source_property}' is not returned by {job.source_name}" for m in job.mappings if m.destination_property is not None and m.source_property not in columns]

    # =========================================================================
    # Background run
    # =========================================================================

    def _execute(self, context: _RunContext) -> None:
        job = context.job
        log = logger.bind(job_id=job.id)
        extractor = BatchExtractor(
            self._client,
            context.source,
            job.mode,
            job.source_name,
            page_size=self._page_size,
            slots=self._limits.query_slots(context.source),
            on_page_failed=lambda offset, error: self._persistence.add_failed_offset(job.id, offset),
        )
        dispatcher: BoundedDispatcher[tuple[int, dict[str, Any]], None] = BoundedDispatcher(
            self._limits.insert_slots(context.destination),
            context.destination.insert_concurrency,
        )
        try:
            if context.cancel_requested.is_set():
                self._finish(job.id, cancelled=True)
                return
            try:
                first = extractor.next_page(0)
            except ImigrateError as e:
                log.warning("First page could not be fetched", error=str(e))
                self._persistence.update_job_status(
                    job.id, JobStatus.FAILED, error_message=f"Could not fetch first page: {e}", completed_at=now()
                )
                return

            self._persistence.set_total_rows(job.id, first.total_count)
            log.info("Extraction started", total_rows=first.total_count, pages=len(generate_offsets(first.total_count, extractor.page_size)))
            cut_short = not self._insert_page(context, dispatcher, 0, first)

            remaining = generate_offsets(first.total_count, extractor.page_size)[1:]
            for offset, page in extractor.iter_pages(remaining, should_stop=context.cancel_requested.is_set):
                if not self._insert_page(context, dispatcher, offset, page):
                    cut_short = True
            cut_short = cut_short or extractor.stopped_early
        finally:
            dispatcher.shutdown()

        # A cancel that lands after the last row was dispatched doesn't cancel anything
        self._finish(job.id, cancelled=cut_short)

    def _insert_page(
        self,
        context: _RunContext,
        dispatcher: BoundedDispatcher[tuple[int, dict[str, Any]], None],
        offset: int,
        page: Page,
    ) -> bool:
        """Insert every row of one page, then refresh the job's counters.

        Returns False if cancellation left rows of the page undispatched.
        """
        if context.cancel_requested.is_set():
            return not page.rows
        indexed_rows = [(offset + index, row) for index, row in enumerate(page.rows)]
        try:
            dispatcher.run(
                indexed_rows,
                functools.partial(self._insert_row, context),
                should_stop=context.cancel_requested.is_set,
            )
        except ImigrateError as e:
            # Rows that could not even be encrypted have no attempt to record
            logger.warning("Page insertion aborted", job_id=context.job.id, offset=offset, error=str(e))
            self._persistence.add_failed_offset(context.job.id, offset)
        counts = self._persistence.update_job_counters(context.job.id)
        logger.debug("Page processed", job_id=context.job.id, offset=offset, processed=counts.processed, failed=counts.failed)
        return not dispatcher.stopped_early

    def _insert_row(self, context: _RunContext, indexed_row: tuple[int, dict[str, Any]]) -> None:
        row_index, raw = indexed_row
        payload = self._codec.encode(context.source.id, raw)
        outcome = self._submit(context.job, context.destination, raw)
        self._ledger.record_initial(context.job.id, row_index, payload, outcome)

    def _submit(self, job: Job, destination: Environment, raw: dict[str, Any]) -> InsertOutcome:
        """Map and insert one row. Remote failures become a failed outcome."""
        properties = transform_row(raw, job.mappings)
        try:
            response = self._client.insert_entity(destination, job.dest_entity_type, properties)
            return InsertOutcome.succeeded(extract_identity(response, f"POST /api/{job.dest_entity_type}"))
        except ImigrateError as e:
            return InsertOutcome.failed(str(e))

    def _finish(self, job_id: str, *, cancelled: bool) -> None:
        counts = self._persistence.update_job_counters(job_id)
        job = self._persistence.get_job(job_id)
        if cancelled:
            status = JobStatus.CANCELLED
        elif counts.failed or job.failed_offsets:
            status = JobStatus.PARTIAL
        else:
            status = JobStatus.COMPLETED
        self._persistence.update_job_status(job_id, status, completed_at=now())
        logger.info(
            "Job finished",
            job_id=job_id,
            status=status.value,
            processed=counts.processed,
            successful=counts.successful,
            failed=counts.failed,
            failed_pages=len(job.failed_offsets),
        )

    def _record_run_error(self, job_id: str, error: BaseException) -> None:
        self._persistence.update_job_counters(job_id)
        self._persistence.update_job_status(job_id, JobStatus.FAILED, error_message=str(error) or type(error).__name__, completed_at=now())

    # =========================================================================
    # Retries
    # =========================================================================

    @contextmanager
    def _retry_claim(self, job: Job) -> Iterator[tuple[Environment, Environment, threading.Event]]:
        """Hold the job's run slot for a retry pass so no run or retry overlaps it."""
        cancel_requested = self._supervisor.claim(job.id)
        try:
            if self._persistence.get_job(job.id).status == JobStatus.RUNNING:
                raise JobAlreadyRunningError(job.id)
            source = self._persistence.get_environment_by_id(job.source_environment_id)
            destination = self._persistence.get_environment_by_id(job.dest_environment_id)
            # Decryption needs the source password; a token refresh may need the destination's
            self._vault.require_password(source.id)
            self._vault.require_password(destination.id)
            yield source, destination, cancel_requested
        finally:
            self._supervisor.release(job.id)

    def _replay(self, job: Job, source: Environment, destination: Environment, row: Row, reason: AttemptReason) -> InsertOutcome:
        try:
            raw = self._codec.decode(source.id, row.encrypted_payload)
        except DecryptionError as e:
            outcome = InsertOutcome.failed(f"Stored payload could not be decrypted: {e}")
        else:
            outcome = self._submit(job, destination, raw)
        self._ledger.record_retry(row, reason, outcome)
        return outcome

    def _settle_after_retry(self, job_id: str) -> None:
        """A partial job with nothing left failed becomes completed."""
        counts = self._persistence.update_job_counters(job_id)
        job = self._persistence.get_job(job_id)
        if job.status == JobStatus.PARTIAL and counts.failed == 0 and not job.failed_offsets:
            self._persistence.update_job_status(job_id, JobStatus.COMPLETED)
            logger.info("All failed rows recovered", job_id=job_id)

    def retry_failed_rows(self, job_id: str) -> RetrySummary:
        """Replay every failed row of a job from its stored payload (``auto_retry``).

        The pass holds the job like a run does, so ``cancel_job`` stops it
        from dispatching further rows.

        Raises:
            JobNotFoundError: No such job
            JobAlreadyRunningError: The job is running, or another retry of it is
            MissingCredentialsError: A password is not resident
        """
        job = self._persistence.get_job(job_id)
        with self._retry_claim(job) as (source, destination, cancel_requested):
            rows = self._persistence.list_rows_by_job_status(job_id, RowStatus.FAILED)
            if not rows:
                return RetrySummary(retried=0, succeeded=0, failed=0)

            dispatcher: BoundedDispatcher[Row, InsertOutcome] = BoundedDispatcher(
                self._limits.insert_slots(destination),
                destination.insert_concurrency,
                name="imigrate-retry",
            )
            try:
                outcomes = dispatcher.run(
                    rows,
                    lambda row: self._replay(job, source, destination, row, AttemptReason.AUTO_RETRY),
                    should_stop=cancel_requested.is_set,
                )
            finally:
                dispatcher.shutdown()

            self._settle_after_retry(job_id)
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        summary = RetrySummary(retried=len(outcomes), succeeded=succeeded, failed=len(outcomes) - succeeded)
        logger.info("Failed rows retried", job_id=job_id, retried=summary.retried, succeeded=summary.succeeded, failed=summary.failed)
        return summary

    def retry_single_row(self, row_id: str) -> RetryResult:
        """Replay one failed row from its stored payload (``manual_retry``).

        Raises:
            RowNotFoundError: No such row
            RowNotRetryableError: The row already succeeded
            JobAlreadyRunningError: The row's job is running, or being retried
            MissingCredentialsError: A password is not resident
        """
        row = self._persistence.get_row(row_id)
        if row.status == RowStatus.SUCCESS:
            raise RowNotRetryableError(row_id)
        job = self._persistence.get_job(row.job_id)
        with self._retry_claim(job) as (source, destination, _):
            # Re-read under the claim; a retry that just finished may have recovered it
            row = self._persistence.get_row(row_id)
            if row.status == RowStatus.SUCCESS:
                raise RowNotRetryableError(row_id)
            with self._limits.insert_slots(destination):
                outcome = self._replay(job, source, destination, row, AttemptReason.MANUAL_RETRY)
            self._settle_after_retry(job.id)
        return RetryResult(success=outcome.success, row=self._persistence.get_row_summary(row_id))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job_with_counts(self, job_id: str) -> JobWithCounts:
        job = self._persistence.get_job(job_id)
        return JobWithCounts(job=job, counts=self._persistence.get_job_counts(job_id))

    def list_jobs(self) -> list[JobWithCounts]:
        """All jobs, newest first, with live row counts."""
        return [JobWithCounts(job=job, counts=self._persistence.get_job_counts(job.id)) for job in self._persistence.list_jobs()]

    def get_job_rows(self, job_id: str, status: RowStatus | str | None = None) -> RowPage:
        return self._persistence.get_job_rows(job_id, status)

    def get_row_attempts(self, row_id: str) -> list[Attempt]:
        return self._persistence.get_row_attempts(row_id)
