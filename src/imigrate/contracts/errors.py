"""Exception hierarchy for the migration core.

Every error raised across a subsystem boundary derives from ImigrateError.
Remote failures carry a ``retryable`` flag that the client's backoff loop
consults; everything else is final at the point it is raised.
"""

from typing import Any


class ImigrateError(Exception):
    """Base class for all imigrate errors."""

    retryable: bool = False


# =============================================================================
# Credentials and remote API
# =============================================================================


class MissingCredentialsError(ImigrateError):
    """Raised when an environment's password is not resident in the vault."""

    def __init__(self, environment_id: str) -> None:
        self.environment_id = environment_id
        super().__init__(f"Password not set for environment: {environment_id}")


class AuthenticationFailedError(ImigrateError):
    """Raised when the token endpoint rejects credentials or a replay gets 401 again."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ImisRequestError(ImigrateError):
    """Transport-level failure (connection refused, timeout, TLS error).

    Always retryable: the request may never have reached the server.
    """

    retryable = True

    def __init__(self, message: str, *, url: str | None = None) -> None:
        self.url = url
        super().__init__(message)


class ImisResponseError(ImigrateError):
    """The server answered with a non-success status.

    Retryable for 429 and 5xx. The response body is kept verbatim so the
    ledger can show what the destination said.
    """

    def __init__(self, status_code: int, body: str, *, url: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        self.retryable = status_code == 429 or status_code >= 500
        super().__init__(f"HTTP {status_code}: {body[:500]}" if body else f"HTTP {status_code}")


class SchemaMismatchError(ImigrateError):
    """A response did not have the structure expected for its endpoint."""

    def __init__(self, endpoint: str, diagnostic: str) -> None:
        self.endpoint = endpoint
        self.diagnostic = diagnostic
        super().__init__(f"Unexpected response shape from {endpoint}: {diagnostic}")


# =============================================================================
# Jobs, rows, environments
# =============================================================================


class EnvironmentNotFoundError(ImigrateError):
    def __init__(self, environment_id: str) -> None:
        self.environment_id = environment_id
        super().__init__(f"Environment not found: {environment_id}")


class JobNotFoundError(ImigrateError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobAlreadyRunningError(ImigrateError):
    """Raised when a run is requested for a job that is already running."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job is already running: {job_id}")


class InvalidJobStateError(ImigrateError):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, status: Any, operation: str, reason: str | None = None) -> None:
        self.job_id = job_id
        self.status = status
        self.operation = operation
        self.reason = reason
        message = f"Cannot {operation} job {job_id} in status '{status}'"
        super().__init__(f"{message}: {reason}" if reason else message)


class RowNotFoundError(ImigrateError):
    def __init__(self, row_id: str) -> None:
        self.row_id = row_id
        super().__init__(f"Row not found: {row_id}")


class RowNotRetryableError(ImigrateError):
    """Raised when a retry is requested for a row whose latest attempt succeeded."""

    def __init__(self, row_id: str) -> None:
        self.row_id = row_id
        super().__init__(f"Row {row_id} already succeeded and cannot be retried")


class ValidationFailedError(ImigrateError):
    """Pre-flight validation of a job's mapping or configuration failed.

    Attributes:
        problems: One human-readable line per violation.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Validation failed: " + "; ".join(problems))


# =============================================================================
# Local storage and encryption
# =============================================================================


class StorageError(ImigrateError):
    """Wraps any failure of the local job/row/attempt database."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage operation '{operation}' failed: {cause}")


class DecryptionError(ImigrateError):
    """Ciphertext could not be authenticated with the given key.

    Raised for a wrong password as well as for tampered or truncated blobs.
    """


class MasterPasswordError(ImigrateError):
    """Master password is wrong, not configured, or the keyring is locked."""
