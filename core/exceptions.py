"""
Custom exceptions for the listing sync engine with structured error context.

Each exception carries a context dictionary for logging and for the
observability rows written when a failure is converted into state.

Exception Hierarchy:
    SyncEngineError (base)
    ├── UpstreamError
    │   ├── TransientUpstreamError
    │   ├── RateLimited
    │   ├── AuthenticationError
    │   └── ResourceNotFoundError
    ├── MediaError
    │   ├── PermanentAssetError
    │   ├── ExpiredMediaUrlError
    │   └── StorageError
    ├── PersistenceError
    ├── CheckpointError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any

from core.timeutils import utcnow


class SyncEngineError(Exception):
    """
    Base exception for all sync engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (resource, entity key, url, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

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
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncEngineError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Throttling (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """
    pass


class NonRetryableError(SyncEngineError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404, 410)
    """
    pass


# ============================================================================
# Upstream Errors
# ============================================================================

class UpstreamError(SyncEngineError):
    """Base exception for failures talking to the upstream catalog or media hosts."""
    pass


class TransientUpstreamError(RetryableError, UpstreamError):
    """
    Timeouts, network failures and 5xx responses.

    Context should include:
        - url: The URL that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class RateLimited(RetryableError, UpstreamError):
    """
    Throttling signal (HTTP 429 or an equivalent store response).

    Never fatal: callers convert it into a wait-and-continue action plus a
    rate-limit audit event.
    """

    def __init__(
        self,
        message: str,
        source: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        endpoint: Optional[str] = None,
        entity_key: Optional[str] = None,
        retry_after: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.source = source  # "api" or "cdn"
        self.endpoint = endpoint
        self.entity_key = entity_key
        self.retry_after = retry_after
        self.response_body = response_body
        self.context["source"] = source
        if endpoint:
            self.context["endpoint"] = endpoint
        if entity_key:
            self.context["entity_key"] = entity_key
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, UpstreamError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, UpstreamError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Media Errors
# ============================================================================

class MediaError(SyncEngineError):
    """Base exception for media download and rehosting failures."""
    pass


class PermanentAssetError(NonRetryableError, MediaError):
    """
    The asset can never be fetched (not found, gone).

    Context should include:
        - media_key: The asset that failed
        - status_code: HTTP status code
    """
    pass


class ExpiredMediaUrlError(MediaError):
    """The signed source URL expired and must be refreshed from the catalog."""
    pass


class StorageError(RetryableError, MediaError):
    """Object storage write or delete failed for a non-throttling reason."""
    pass


# ============================================================================
# Persistence Errors
# ============================================================================

class PersistenceError(SyncEngineError):
    """
    Exception raised when a write to the canonical store fails.

    Context should include:
        - operation: Type of database operation (UPSERT, UPDATE, DELETE)
        - table_name: Name of the table
        - resource: Resource being persisted (if applicable)
    """
    pass


class CheckpointError(SyncEngineError):
    """
    Exception raised when sync state (high-water mark) management fails.

    Context should include:
        - resource: The resource whose sync state failed
        - operation: Operation that failed (read, write)
    """
    pass
