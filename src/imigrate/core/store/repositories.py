"""Repository layer for store records.

Handles the seam between SQLAlchemy rows (strings, JSON text) and domain
objects (strict enum types, lists). The store is our own data: a value
that doesn't parse is a bug, so conversion errors propagate.
"""

from typing import Any

from sqlalchemy.engine import Row as SARow

from imigrate.contracts import (
    ApiVersion,
    Attempt,
    AttemptReason,
    Environment,
    Job,
    JobMode,
    JobStatus,
    PropertyMapping,
    Row,
    RowStatus,
)
from imigrate.core.store._helpers import as_utc, load_json


class EnvironmentRepository:
    def load(self, row: SARow[Any]) -> Environment:
        return Environment(
            id=row.id,
            name=row.name,
            base_url=row.base_url,
            username=row.username,
            api_version=ApiVersion(row.api_version),
            query_concurrency=row.query_concurrency,
            insert_concurrency=row.insert_concurrency,
        )


class JobRepository:
    """Repository for Job records."""

    def load(self, row: SARow[Any]) -> Job:
        """Load Job from database row.

        Converts string fields to enums and JSON columns to lists.
        """
        return Job(
            id=row.id,
            name=row.name,
            status=JobStatus(row.status),
            mode=JobMode(row.mode),
            source_environment_id=row.source_environment_id,
            source_query_path=row.source_query_path,
            source_entity_type=row.source_entity_type,
            dest_environment_id=row.dest_environment_id,
            dest_entity_type=row.dest_entity_type,
            mappings=[PropertyMapping.from_dict(m) for m in load_json(row.mappings_json)],
            total_rows=row.total_rows,
            processed_rows=row.processed_rows,
            successful_rows=row.successful_rows,
            failed_rows=row.failed_rows,
            failed_offsets=load_json(row.failed_offsets_json),
            identity_field_names=load_json(row.identity_field_names_json),
            error_message=row.error_message,
            started_at=as_utc(row.started_at),
            completed_at=as_utc(row.completed_at),
            created_at=as_utc(row.created_at),
        )


class RowRepository:
    def load(self, row: SARow[Any]) -> Row:
        return Row(
            id=row.id,
            job_id=row.job_id,
            row_index=row.row_index,
            encrypted_payload=row.encrypted_payload,
            status=RowStatus(row.status),
            identity_elements=load_json(row.identity_elements_json),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


class AttemptRepository:
    def load(self, row: SARow[Any]) -> Attempt:
        return Attempt(
            id=row.id,
            row_id=row.row_id,
            sequence=row.sequence,
            reason=AttemptReason(row.reason),
            success=bool(row.success),
            error_message=row.error_message,
            identity_elements=load_json(row.identity_elements_json),
            created_at=as_utc(row.created_at),
        )
