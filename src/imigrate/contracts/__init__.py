"""Shared contracts: enums, records, canonical API shapes, and errors.

Importing from ``imigrate.contracts`` is the supported way for
subsystems to reference each other's types.
"""

from imigrate.contracts.enums import (
    ApiVersion,
    AttemptReason,
    JobMode,
    JobStatus,
    PropertyType,
    RowStatus,
)
from imigrate.contracts.errors import (
    AuthenticationFailedError,
    DecryptionError,
    EnvironmentNotFoundError,
    ImigrateError,
    ImisRequestError,
    ImisResponseError,
    InvalidJobStateError,
    JobAlreadyRunningError,
    JobNotFoundError,
    MasterPasswordError,
    MissingCredentialsError,
    RowNotFoundError,
    RowNotRetryableError,
    SchemaMismatchError,
    StorageError,
    ValidationFailedError,
)
from imigrate.contracts.imis import (
    BINARY_BLOB_TYPE,
    RESTRICTED_DESTINATION_PROPERTIES,
    DataSource,
    DestinationDefinition,
    DestinationProperty,
    Page,
    QueryDefinition,
    is_binary_blob,
)
from imigrate.contracts.records import (
    Attempt,
    Environment,
    InsertOutcome,
    Job,
    JobCounts,
    JobWithCounts,
    PropertyMapping,
    RetryResult,
    RetrySummary,
    Row,
    RowPage,
    RowSummary,
)

__all__ = [
    "BINARY_BLOB_TYPE",
    "RESTRICTED_DESTINATION_PROPERTIES",
    "ApiVersion",
    "Attempt",
    "AttemptReason",
    "AuthenticationFailedError",
    "DataSource",
    "DecryptionError",
    "DestinationDefinition",
    "DestinationProperty",
    "Environment",
    "EnvironmentNotFoundError",
    "ImigrateError",
    "ImisRequestError",
    "ImisResponseError",
    "InsertOutcome",
    "InvalidJobStateError",
    "Job",
    "JobAlreadyRunningError",
    "JobCounts",
    "JobMode",
    "JobNotFoundError",
    "JobStatus",
    "JobWithCounts",
    "MasterPasswordError",
    "MissingCredentialsError",
    "Page",
    "PropertyMapping",
    "PropertyType",
    "QueryDefinition",
    "RetryResult",
    "RetrySummary",
    "Row",
    "RowNotFoundError",
    "RowNotRetryableError",
    "RowPage",
    "RowStatus",
    "RowSummary",
    "SchemaMismatchError",
    "StorageError",
    "ValidationFailedError",
    "is_binary_blob",
]
