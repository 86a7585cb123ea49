"""All status codes, modes, and kinds used across subsystem boundaries.

Values are stored verbatim in the local database, so renaming a member
is a schema change.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """Status of a migration job.

    Stored in the database (jobs.status).
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)


class JobMode(StrEnum):
    """Where a job extracts its rows from.

    QUERY runs a saved IQA query; DATASOURCE pages a raw business-object feed.
    """

    QUERY = "query"
    DATASOURCE = "datasource"


class RowStatus(StrEnum):
    """Outcome of the latest insertion attempt for a row.

    Stored in database (rows.status). Always equal to the newest attempt.
    """

    SUCCESS = "success"
    FAILED = "failed"


class AttemptReason(StrEnum):
    """Why an insertion attempt was made.

    Stored in database (attempts.reason).
    """

    INITIAL = "initial"
    AUTO_RETRY = "auto_retry"
    MANUAL_RETRY = "manual_retry"


class ApiVersion(StrEnum):
    """Generation of the remote iMIS REST API.

    V1 is iMIS 2017, which wraps values in typed envelopes and returns
    GenericEntityData rows for IQA queries. V2 is iMIS EMS.
    """

    V1 = "V1"
    V2 = "V2"


class PropertyType(StrEnum):
    """Destination property type names from BoEntityDefinition."""

    BINARY = "Binary"
    BOOLEAN = "Boolean"
    DATE = "Date"
    DECIMAL = "Decimal"
    INTEGER = "Integer"
    MONETARY = "Monetary"
    STRING = "String"
