# src/imigrate/core/store/persistence.py
"""Persistence: the only writer of the migration store.

Every public method runs in its own transaction unless a connection is
passed in, in which case it joins that transaction. Database failures of
any kind surface as StorageError.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from sqlalchemy import Connection, case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from imigrate.contracts import (
    Attempt,
    AttemptReason,
    Environment,
    EnvironmentNotFoundError,
    Job,
    JobCounts,
    JobMode,
    JobNotFoundError,
    JobStatus,
    PropertyMapping,
    Row,
    RowNotFoundError,
    RowPage,
    RowStatus,
    RowSummary,
    StorageError,
)
from imigrate.core.store._helpers import as_utc, coerce_enum, dump_json, generate_id, load_json, now
from imigrate.core.store.repositories import (
    AttemptRepository,
    EnvironmentRepository,
    JobRepository,
    RowRepository,
)
from imigrate.core.store.schema import (
    attempts_table,
    environments_table,
    jobs_table,
    rows_table,
    settings_table,
    stored_passwords_table,
)

if TYPE_CHECKING:
    from imigrate.core.store.database import MigrationDB

P = ParamSpec("P")
T = TypeVar("T")


def _storage_operation(method: Callable[P, T]) -> Callable[P, T]:
    """Translate SQLAlchemy failures into StorageError named after the method."""

    @functools.wraps(method)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return method(*args, **kwargs)
        except SQLAlchemyError as e:
            raise StorageError(method.__name__, e) from e

    return wrapper


class Persistence:
    """Reads and writes environments, jobs, rows and attempts.

    Example:
        persistence = Persistence(MigrationDB.in_memory())
        job = persistence.create_job(name="Contacts", mode=JobMode.QUERY, ...)
        with persistence.transaction() as conn:
            row = persistence.create_row(job.id, 0, blob, RowStatus.SUCCESS, ["123"], conn=conn)
            persistence.insert_attempt(row.id, AttemptReason.INITIAL, True, conn=conn)
    """

    def __init__(self, db: MigrationDB) -> None:
        self._db = db
        self._environments = EnvironmentRepository()
        self._jobs = JobRepository()
        self._rows = RowRepository()
        self._attempts = AttemptRepository()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction that several calls can share via ``conn=``."""
        try:
            with self._db.connection() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StorageError("transaction", e) from e

    @contextmanager
    def _connection(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self._db.connection() as owned:
                yield owned

    # === Environments ===

    @_storage_operation
    def upsert_environment(self, environment: Environment) -> None:
        values = {
            "name": environment.name,
            "base_url": environment.base_url,
            "username": environment.username,
            "api_version": environment.api_version.value,
            "query_concurrency": environment.query_concurrency,
            "insert_concurrency": environment.insert_concurrency,
            "updated_at": now(),
        }
        with self._db.connection() as conn:
            result = conn.execute(update(environments_table).where(environments_table.c.id == environment.id).values(**values))
            if result.rowcount == 0:
                conn.execute(environments_table.insert().values(id=environment.id, created_at=values["updated_at"], **values))

    @_storage_operation
    def get_environment_by_id(self, environment_id: str) -> Environment:
        """Raises EnvironmentNotFoundError if no such environment exists."""
        with self._db.connection() as conn:
            row = conn.execute(select(environments_table).where(environments_table.c.id == environment_id)).fetchone()
        if row is None:
            raise EnvironmentNotFoundError(environment_id)
        return self._environments.load(row)

    @_storage_operation
    def list_environments(self) -> list[Environment]:
        with self._db.connection() as conn:
            rows = conn.execute(select(environments_table).order_by(environments_table.c.name)).fetchall()
        return [self._environments.load(row) for row in rows]

    # === Jobs ===

    @_storage_operation
    def create_job(
        self,
        *,
        name: str,
        mode: JobMode,
        source_environment_id: str,
        dest_environment_id: str,
        dest_entity_type: str,
        mappings: list[PropertyMapping],
        source_query_path: str | None = None,
        source_entity_type: str | None = None,
    ) -> Job:
        job_id = generate_id()
        with self._db.connection() as conn:
            conn.execute(
                jobs_table.insert().values(
                    id=job_id,
                    name=name,
                    status=JobStatus.QUEUED.value,
                    mode=mode.value,
                    source_environment_id=source_environment_id,
                    source_query_path=source_query_path,
                    source_entity_type=source_entity_type,
                    dest_environment_id=dest_environment_id,
                    dest_entity_type=dest_entity_type,
                    mappings_json=dump_json([m.to_dict() for m in mappings]),
                    processed_rows=0,
                    successful_rows=0,
                    failed_rows=0,
                    failed_offsets_json="[]",
                    identity_field_names_json="[]",
                    created_at=now(),
                )
            )
            return self._get_job(conn, job_id)

    def _get_job(self, conn: Connection, job_id: str) -> Job:
        row = conn.execute(select(jobs_table).where(jobs_table.c.id == job_id)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return self._jobs.load(row)

    @_storage_operation
    def get_job(self, job_id: str) -> Job:
        """Raises JobNotFoundError if the job does not exist."""
        with self._db.connection() as conn:
            return self._get_job(conn, job_id)

    @_storage_operation
    def list_jobs(self) -> list[Job]:
        """All jobs, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(select(jobs_table).order_by(jobs_table.c.created_at.desc())).fetchall()
        return [self._jobs.load(row) for row in rows]

    @_storage_operation
    def claim_job(
        self,
        job_id: str,
        *,
        from_statuses: tuple[JobStatus, ...],
        identity_field_names: list[str],
    ) -> bool:
        """Atomically move a job to ``running`` if it is in one of ``from_statuses``.

        Resets the counters and failed offsets; rows and attempts are never
        touched here, they go only with the job itself. Returns False when
        the job's status did not match, i.e. someone else got there first.
        """
        with self._db.connection() as conn:
            result = conn.execute(
                update(jobs_table)
                .where(jobs_table.c.id == job_id)
                .where(jobs_table.c.status.in_([s.value for s in from_statuses]))
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=now(),
                    completed_at=None,
                    error_message=None,
                    total_rows=None,
                    processed_rows=0,
                    successful_rows=0,
                    failed_rows=0,
                    failed_offsets_json="[]",
                    identity_field_names_json=dump_json(identity_field_names),
                )
            )
            return bool(result.rowcount)

    @_storage_operation
    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value}
        if error_message is not None:
            values["error_message"] = error_message
        if completed_at is not None:
            values["completed_at"] = completed_at
        with self._db.connection() as conn:
            result = conn.execute(update(jobs_table).where(jobs_table.c.id == job_id).values(**values))
            if result.rowcount == 0:
                raise JobNotFoundError(job_id)

    @_storage_operation
    def set_total_rows(self, job_id: str, total_rows: int) -> None:
        with self._db.connection() as conn:
            conn.execute(update(jobs_table).where(jobs_table.c.id == job_id).values(total_rows=total_rows))

    @_storage_operation
    def add_failed_offset(self, job_id: str, offset: int) -> list[int]:
        """Append a page offset to the job's failed offsets; returns the new list."""
        with self._db.connection() as conn:
            current = conn.execute(select(jobs_table.c.failed_offsets_json).where(jobs_table.c.id == job_id)).scalar_one_or_none()
            if current is None:
                raise JobNotFoundError(job_id)
            offsets = sorted({*load_json(current), offset})
            conn.execute(update(jobs_table).where(jobs_table.c.id == job_id).values(failed_offsets_json=dump_json(offsets)))
            return offsets

    def _count_rows(self, conn: Connection, job_id: str) -> JobCounts:
        result = conn.execute(
            select(
                func.count(rows_table.c.id),
                func.coalesce(func.sum(case((rows_table.c.status == RowStatus.SUCCESS.value, 1), else_=0)), 0),
                func.coalesce(func.sum(case((rows_table.c.status == RowStatus.FAILED.value, 1), else_=0)), 0),
            ).where(rows_table.c.job_id == job_id)
        ).one()
        return JobCounts(processed=int(result[0]), successful=int(result[1]), failed=int(result[2]))

    @_storage_operation
    def get_job_counts(self, job_id: str) -> JobCounts:
        with self._db.connection() as conn:
            return self._count_rows(conn, job_id)

    @_storage_operation
    def update_job_counters(self, job_id: str, *, conn: Connection | None = None) -> JobCounts:
        """Recompute processed/successful/failed from the rows table and store them."""
        with self._connection(conn) as c:
            counts = self._count_rows(c, job_id)
            c.execute(
                update(jobs_table)
                .where(jobs_table.c.id == job_id)
                .values(processed_rows=counts.processed, successful_rows=counts.successful, failed_rows=counts.failed)
            )
            return counts

    def _delete_job_rows(self, conn: Connection, job_id: str) -> None:
        row_ids = select(rows_table.c.id).where(rows_table.c.job_id == job_id)
        conn.execute(delete(attempts_table).where(attempts_table.c.row_id.in_(row_ids)))
        conn.execute(delete(rows_table).where(rows_table.c.job_id == job_id))

    @_storage_operation
    def delete_job(self, job_id: str) -> None:
        """Delete a job with its rows and attempts."""
        with self._db.connection() as conn:
            self._get_job(conn, job_id)
            self._delete_job_rows(conn, job_id)
            conn.execute(delete(jobs_table).where(jobs_table.c.id == job_id))

    # === Rows ===

    @_storage_operation
    def create_row(
        self,
        job_id: str,
        row_index: int,
        encrypted_payload: str,
        status: RowStatus,
        identity_elements: list[str] | None = None,
        *,
        conn: Connection | None = None,
    ) -> Row:
        timestamp = now()
        row = Row(
            id=generate_id(),
            job_id=job_id,
            row_index=row_index,
            encrypted_payload=encrypted_payload,
            status=status,
            identity_elements=identity_elements,
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self._connection(conn) as c:
            c.execute(
                rows_table.insert().values(
                    id=row.id,
                    job_id=job_id,
                    row_index=row_index,
                    encrypted_payload=encrypted_payload,
                    status=status.value,
                    identity_elements_json=dump_json(identity_elements) if identity_elements is not None else None,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
            )
        return row

    @_storage_operation
    def update_row_status(
        self,
        row_id: str,
        status: RowStatus,
        identity_elements: list[str] | None = None,
        *,
        conn: Connection | None = None,
    ) -> None:
        """Set a row's status; identity elements are only overwritten when given."""
        values: dict[str, Any] = {"status": status.value, "updated_at": now()}
        if identity_elements is not None:
            values["identity_elements_json"] = dump_json(identity_elements)
        with self._connection(conn) as c:
            result = c.execute(update(rows_table).where(rows_table.c.id == row_id).values(**values))
            if result.rowcount == 0:
                raise RowNotFoundError(row_id)

    @_storage_operation
    def get_row(self, row_id: str) -> Row:
        with self._db.connection() as conn:
            row = conn.execute(select(rows_table).where(rows_table.c.id == row_id)).fetchone()
        if row is None:
            raise RowNotFoundError(row_id)
        return self._rows.load(row)

    @_storage_operation
    def list_rows_by_job_status(self, job_id: str, status: RowStatus | str) -> list[Row]:
        status = coerce_enum(status, RowStatus)
        with self._db.connection() as conn:
            rows = conn.execute(
                select(rows_table)
                .where(rows_table.c.job_id == job_id)
                .where(rows_table.c.status == status.value)
                .order_by(rows_table.c.row_index)
            ).fetchall()
        return [self._rows.load(row) for row in rows]

    def _summary_query(self) -> Any:
        attempt_count = select(func.count(attempts_table.c.id)).where(attempts_table.c.row_id == rows_table.c.id).scalar_subquery()
        latest_attempt_at = select(func.max(attempts_table.c.created_at)).where(attempts_table.c.row_id == rows_table.c.id).scalar_subquery()
        latest_error = (
            select(attempts_table.c.error_message)
            .where(attempts_table.c.row_id == rows_table.c.id)
            .order_by(attempts_table.c.sequence.desc())
            .limit(1)
            .scalar_subquery()
        )
        return select(
            rows_table,
            attempt_count.label("attempt_count"),
            latest_attempt_at.label("latest_attempt_at"),
            latest_error.label("latest_error"),
        )

    def _load_summary(self, row: Any) -> RowSummary:
        return RowSummary(
            row=self._rows.load(row),
            attempt_count=row.attempt_count,
            latest_attempt_at=as_utc(row.latest_attempt_at),
            latest_error=row.latest_error,
        )

    @_storage_operation
    def get_job_rows(self, job_id: str, status: RowStatus | str | None = None) -> RowPage:
        """Rows of a job ordered by row index, each with its attempt summary."""
        query = self._summary_query().where(rows_table.c.job_id == job_id).order_by(rows_table.c.row_index)
        if status is not None:
            query = query.where(rows_table.c.status == coerce_enum(status, RowStatus).value)
        with self._db.connection() as conn:
            self._get_job(conn, job_id)
            rows = conn.execute(query).fetchall()
        summaries = [self._load_summary(row) for row in rows]
        return RowPage(rows=summaries, total=len(summaries))

    @_storage_operation
    def get_row_summary(self, row_id: str) -> RowSummary:
        with self._db.connection() as conn:
            row = conn.execute(self._summary_query().where(rows_table.c.id == row_id)).fetchone()
        if row is None:
            raise RowNotFoundError(row_id)
        return self._load_summary(row)

    # === Attempts ===

    @_storage_operation
    def insert_attempt(
        self,
        row_id: str,
        reason: AttemptReason,
        success: bool,
        *,
        error_message: str | None = None,
        identity_elements: list[str] | None = None,
        conn: Connection | None = None,
    ) -> Attempt:
        """Append an attempt; its sequence is one past the row's newest attempt."""
        with self._connection(conn) as c:
            sequence = c.execute(
                select(func.coalesce(func.max(attempts_table.c.sequence), 0) + 1).where(attempts_table.c.row_id == row_id)
            ).scalar_one()
            attempt = Attempt(
                id=generate_id(),
                row_id=row_id,
                sequence=int(sequence),
                reason=reason,
                success=success,
                error_message=error_message,
                identity_elements=identity_elements,
                created_at=now(),
            )
            try:
                c.execute(
                    attempts_table.insert().values(
                        id=attempt.id,
                        row_id=row_id,
                        sequence=attempt.sequence,
                        reason=reason.value,
                        success=success,
                        error_message=error_message,
                        identity_elements_json=dump_json(identity_elements) if identity_elements is not None else None,
                        created_at=attempt.created_at,
                    )
                )
            except IntegrityError as e:
                # Foreign key failure: the row does not exist
                raise RowNotFoundError(row_id) from e
        return attempt

    @_storage_operation
    def get_row_attempts(self, row_id: str) -> list[Attempt]:
        """All attempts for a row, oldest first."""
        with self._db.connection() as conn:
            if conn.execute(select(rows_table.c.id).where(rows_table.c.id == row_id)).fetchone() is None:
                raise RowNotFoundError(row_id)
            rows = conn.execute(
                select(attempts_table).where(attempts_table.c.row_id == row_id).order_by(attempts_table.c.sequence)
            ).fetchall()
        return [self._attempts.load(row) for row in rows]

    # === Settings and stored passwords ===

    @_storage_operation
    def get_setting(self, key: str) -> str | None:
        with self._db.connection() as conn:
            return conn.execute(select(settings_table.c.value).where(settings_table.c.key == key)).scalar_one_or_none()

    @_storage_operation
    def set_setting(self, key: str, value: str) -> None:
        with self._db.connection() as conn:
            result = conn.execute(update(settings_table).where(settings_table.c.key == key).values(value=value, updated_at=now()))
            if result.rowcount == 0:
                conn.execute(settings_table.insert().values(key=key, value=value, updated_at=now()))

    @_storage_operation
    def delete_setting(self, key: str) -> None:
        with self._db.connection() as conn:
            conn.execute(delete(settings_table).where(settings_table.c.key == key))

    @_storage_operation
    def save_stored_password(self, environment_id: str, encrypted_password: str) -> None:
        with self._db.connection() as conn:
            result = conn.execute(
                update(stored_passwords_table)
                .where(stored_passwords_table.c.environment_id == environment_id)
                .values(encrypted_password=encrypted_password, updated_at=now())
            )
            if result.rowcount == 0:
                conn.execute(
                    stored_passwords_table.insert().values(
                        environment_id=environment_id,
                        encrypted_password=encrypted_password,
                        updated_at=now(),
                    )
                )

    @_storage_operation
    def list_stored_passwords(self) -> dict[str, str]:
        """environment id → encrypted password blob."""
        with self._db.connection() as conn:
            rows = conn.execute(select(stored_passwords_table)).fetchall()
        return {row.environment_id: row.encrypted_password for row in rows}

    @_storage_operation
    def delete_stored_passwords(self) -> None:
        with self._db.connection() as conn:
            conn.execute(delete(stored_passwords_table))
