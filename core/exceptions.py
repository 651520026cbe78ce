"""
Custom exceptions for the order sync pipeline with structured error context.

Every exception carries a context dictionary and, when it wraps another
failure, the original exception (also chained as ``__cause__``). Messages
include the HTTP status text where one exists, since the error categorizer
classifies failures by their text.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError
    │   └── RemoteAPIError
    │       ├── NetworkError
    │       ├── RateLimitError
    │       ├── ServerError
    │       ├── AuthenticationError
    │       ├── PermissionDeniedError
    │       └── ResourceNotFoundError
    ├── TransformError
    │   └── SanitizationError
    ├── WriteError
    │   ├── UpsertError
    │   └── StoreTimeoutError
    ├── SyncAlreadyRunningError
    ├── CleanupInProgressError
    ├── RetryExhaustedError
    └── RunAbortedError
"""

from typing import Optional, Dict, Any, TYPE_CHECKING
from datetime import datetime, timezone

if TYPE_CHECKING:
    from order_sync.error_categorizer import ErrorClassification


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (page, batch, url, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        base_msg = self.message

        if self.original_exception:
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{self.original_exception}"
            )

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(SyncException):
    """Base exception for remote record retrieval failures."""
    pass


class RemoteAPIError(FetchError):
    """
    Exception raised when the remote order API fails.

    Context should include:
        - api_url: The endpoint that failed (never the token)
        - page: Page number being requested
        - response_body: Response body (truncated)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        if status_code is not None:
            self.context["status_code"] = status_code


class NetworkError(RemoteAPIError):
    """Connection failures and timeouts talking to the remote API."""
    pass


class RateLimitError(RemoteAPIError):
    """HTTP 429 from the remote API."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception, status_code=429)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class ServerError(RemoteAPIError):
    """HTTP 5xx from the remote API."""
    pass


class AuthenticationError(RemoteAPIError):
    """HTTP 401 from the remote API (token missing or expired)."""
    pass


class PermissionDeniedError(RemoteAPIError):
    """HTTP 403 from the remote API."""
    pass


class ResourceNotFoundError(RemoteAPIError):
    """HTTP 404 from the remote API."""
    pass


# ============================================================================
# Transform Errors
# ============================================================================

class TransformError(SyncException):
    """Base exception for record transformation failures."""
    pass


class SanitizationError(TransformError):
    """
    A single record failed sanitization and is rejected.

    Context should include:
        - field_name: Name of the offending field
        - field_value: Value that failed (truncated)
        - record_id: Identifier of the record, when known
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        field_value: Any = None,
        context: Optional[Dict[str, Any]] = None
    ):
        context = context or {}
        if field_name is not None:
            context["field_name"] = field_name
            context["field_value"] = str(field_value)[:100]
        super().__init__(message, context)
        self.field_name = field_name
        self.field_value = field_value


# ============================================================================
# Write Errors
# ============================================================================

class WriteError(SyncException):
    """Base exception for destination store failures."""
    pass


class UpsertError(WriteError):
    """
    Exception raised when a batch upsert fails.

    Context should include:
        - batch_size: Number of records in the chunk
        - first_id / last_id: Identifier range of the chunk
    """
    pass


class StoreTimeoutError(WriteError):
    """A store call exceeded its timeout."""
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class SyncAlreadyRunningError(SyncException):
    """A sync was triggered while another one is running."""

    def __init__(self, running_sync_id: Optional[str] = None):
        super().__init__(
            "Sync already in progress",
            context={"running_sync_id": running_sync_id}
        )
        self.running_sync_id = running_sync_id


class CleanupInProgressError(SyncException):
    """A cleanup was requested while another cleanup is running."""

    def __init__(self):
        super().__init__("Cleanup already in progress")


class RetryExhaustedError(SyncException):
    """
    A unit of work (page fetch, batch write) gave up.

    ``fatal`` is set when the failure must abort the enclosing run:
    permanent classifications and error storms.
    """

    def __init__(
        self,
        description: str,
        classification: "ErrorClassification",
        attempts: int,
        fatal: bool = False,
        reason: str = "exhausted"
    ):
        super().__init__(
            f"{description} failed after {attempts} attempt(s) ({reason}): "
            f"{classification.message}",
            context={
                "operation": description,
                "error_kind": classification.kind,
                "error_category": classification.category.value,
                "attempts": attempts,
                "reason": reason,
            },
            original_exception=classification.original_error
        )
        self.description = description
        self.classification = classification
        self.attempts = attempts
        self.fatal = fatal
        self.reason = reason


class RunAbortedError(SyncException):
    """A sync run was aborted and must be marked failed."""
    pass
