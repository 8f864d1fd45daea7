"""Custom exceptions for Store Bridge.

This module defines exception classes for the error conditions that can
occur while talking to the store Admin API, persisting migration state and
driving the migration lifecycle.
"""


class StoreMigrationError(Exception):
    """Base exception for all store migration errors."""

    pass


class APIError(StoreMigrationError):
    """Base class for API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when the access token lacks a required scope (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class ConflictError(APIError):
    """Raised when a resource conflict occurs (409 Conflict)."""

    pass


class ValidationError(APIError):
    """Raised when the API rejects a payload (422 Unprocessable Entity)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: float | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class GraphQLError(APIError):
    """Raised when a GraphQL response carries an ``errors`` field."""

    def __init__(self, message: str, errors: list | None = None):
        """Initialize GraphQL error.

        Args:
            message: Error message
            errors: The ``errors`` list returned by the API
        """
        self.errors = errors or []
        super().__init__(message, status_code=None, response={"errors": self.errors} if errors else None)


class NetworkError(StoreMigrationError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class StateError(StoreMigrationError):
    """Raised when state management errors occur."""

    pass


class ConfigurationError(StoreMigrationError):
    """Raised when configuration is invalid or missing."""

    pass


class MigrationError(StoreMigrationError):
    """Raised when migration operations fail."""

    pass


class ModuleError(MigrationError):
    """Raised when a whole module cannot run (e.g. no active theme in the source store).

    Module errors abort the job immediately and are never retried.
    """

    pass


class UnknownModuleError(ModuleError):
    """Raised when a job names a module outside the supported set."""

    pass


class MigrationNotFoundError(ModuleError):
    """Raised when the migration row for a job does not exist."""

    pass


class LifecycleError(MigrationError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    def __init__(self, message: str, current_status: str | None = None, target_status: str | None = None):
        """Initialize lifecycle error.

        Args:
            message: Error message
            current_status: Status the migration was in
            target_status: Status that was requested
        """
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class MigrationHalted(MigrationError):
    """Raised inside a job when its migration was paused or cancelled.

    This is a cooperative stop, not a failure: the scheduler neither retries
    the job nor flips the migration to ``failed``.
    """

    def __init__(self, migration_id: str, status: str):
        """Initialize halt signal.

        Args:
            migration_id: Migration that was halted
            status: Status observed when halting (paused or cancelled)
        """
        super().__init__(f"Migration {migration_id} is {status}")
        self.migration_id = migration_id
        self.status = status
