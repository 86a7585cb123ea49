"""Record contracts for the local job/row/attempt store.

These are strict contracts - all enum fields use proper enum types.
The repository layer handles string→enum conversion for DB reads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from imigrate.contracts.enums import (
    ApiVersion,
    AttemptReason,
    JobMode,
    JobStatus,
    RowStatus,
)


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Reject values that are not instances of the expected enum type."""
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


@dataclass(frozen=True)
class Environment:
    """One configured connection to an iMIS installation.

    Read-only to the execution core. Credentials live in the vault, never here.
    """

    id: str
    name: str
    base_url: str
    username: str
    api_version: ApiVersion
    query_concurrency: int = 5
    insert_concurrency: int = 50

    def __post_init__(self) -> None:
        _validate_enum(self.api_version, ApiVersion, "api_version")
        if self.query_concurrency < 1 or self.insert_concurrency < 1:
            raise ValueError("concurrency limits must be >= 1")


@dataclass(frozen=True)
class PropertyMapping:
    """Maps one source column to a destination property.

    A mapping with destination_property=None deliberately drops the column.
    """

    source_property: str
    destination_property: str | None

    def to_dict(self) -> dict[str, str | None]:
        return {"sourceProperty": self.source_property, "destinationProperty": self.destination_property}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PropertyMapping":
        return cls(source_property=data["sourceProperty"], destination_property=data["destinationProperty"])


@dataclass
class Job:
    """A migration job and its configuration.

    Strict contract - status and mode must be enums.
    """

    id: str
    name: str
    status: JobStatus
    mode: JobMode
    source_environment_id: str
    dest_environment_id: str
    dest_entity_type: str
    mappings: list[PropertyMapping]
    created_at: datetime
    source_query_path: str | None = None
    source_entity_type: str | None = None
    total_rows: int | None = None
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    failed_offsets: list[int] = field(default_factory=list)
    identity_field_names: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, JobStatus, "status")
        _validate_enum(self.mode, JobMode, "mode")

    @property
    def source_name(self) -> str:
        """Query path or entity type, whichever the mode extracts from."""
        if self.mode == JobMode.QUERY:
            return self.source_query_path or ""
        return self.source_entity_type or ""


@dataclass(frozen=True)
class JobCounts:
    """Row counts derived from the rows table."""

    processed: int = 0
    successful: int = 0
    failed: int = 0


@dataclass(frozen=True)
class JobWithCounts:
    job: Job
    counts: JobCounts


@dataclass
class Row:
    """One extracted row and the outcome of its latest insertion attempt.

    encrypted_payload is an opaque blob; the raw row is only ever held in
    memory while being inserted or retried.
    """

    id: str
    job_id: str
    row_index: int
    encrypted_payload: str
    status: RowStatus
    created_at: datetime
    updated_at: datetime
    identity_elements: list[str] | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, RowStatus, "status")


@dataclass
class Attempt:
    """One insertion attempt for a row. Append-only."""

    id: str
    row_id: str
    sequence: int
    reason: AttemptReason
    success: bool
    created_at: datetime
    error_message: str | None = None
    identity_elements: list[str] | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.reason, AttemptReason, "reason")


@dataclass(frozen=True)
class RowSummary:
    """A row joined with a summary of its attempt history."""

    row: Row
    attempt_count: int
    latest_attempt_at: datetime | None
    latest_error: str | None


@dataclass(frozen=True)
class RowPage:
    rows: list[RowSummary]
    total: int


# =============================================================================
# Execution results
# =============================================================================


@dataclass(frozen=True)
class InsertOutcome:
    """Result of submitting one row to the destination."""

    success: bool
    identity_elements: list[str] | None = None
    error_message: str | None = None

    @classmethod
    def succeeded(cls, identity_elements: list[str] | None) -> "InsertOutcome":
        return cls(success=True, identity_elements=identity_elements)

    @classmethod
    def failed(cls, error_message: str) -> "InsertOutcome":
        return cls(success=False, error_message=error_message)


@dataclass(frozen=True)
class RetrySummary:
    retried: int
    succeeded: int
    failed: int


@dataclass(frozen=True)
class RetryResult:
    success: bool
    row: RowSummary
