"""
Custom exception hierarchy for the sync engine.

Exception Hierarchy:
    RemoteError (base for the remote API boundary)
    ├── RemoteConnectionError  - Network/timeout issues (recoverable)
    ├── RemoteAPIError         - API returned error response
    │   └── RemoteRateLimitedError - 429, carries retry_after
    └── RemoteDataError        - Invalid response structure

    SyncError (base for engine state errors)
    ├── InvalidStateError      - Operation not allowed in the entity's state
    │   └── InvalidTransitionError - Transition not in the state table
    ├── EntityNotFoundError    - No entity with that id
    └── ConcurrentModificationError - Optimistic check-then-set kept losing

    ValidationError            - Operator input rejected before any state change
"""
from typing import Any, Optional


class RemoteError(Exception):
    """Base exception for all remote-API errors."""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.message}: {self.details}" if self.details else self.message


class RemoteConnectionError(RemoteError):
    """
    The remote could not be reached or did not answer in time.

    The queue treats these as transient and backs off.
    """

    def __init__(self, message: str, details: str = None, retry_after: float = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class RemoteAPIError(RemoteError):
    """
    The remote answered with an HTTP error.

    is_transient decides between a retry and VALIDATION_FAILED.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_transient(self) -> bool:
        """5xx and 429 are worth retrying, other 4xx are not."""
        if self.status_code is None:
            return False
        return self.status_code >= 500 or self.status_code == 429


class RemoteRateLimitedError(RemoteAPIError):
    """Remote reported quota exhaustion (HTTP 429)."""

    def __init__(self, message: str, details: str = None, retry_after: float = None):
        super().__init__(message, details, status_code=429, error_code="RATE_LIMITED")
        self.retry_after = retry_after


class RemoteDataError(RemoteError):
    """
    The remote answered 2xx with a body that is not a record.

    Missing id or version, non-object JSON, or no JSON at all.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        expected: str = None,
        got: str = None,
    ):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class SyncError(Exception):
    """Base exception for sync engine state errors."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.message = message
        self.entity_id = entity_id
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.entity_id:
            return f"{self.message} (entity: {self.entity_id})"
        return self.message


class InvalidStateError(SyncError):
    """Operation is not allowed in the entity's current sync status."""

    def __init__(self, message: str, entity_id: Optional[str] = None, status: Any = None):
        super().__init__(message, entity_id)
        self.status = status


class InvalidTransitionError(InvalidStateError):
    """Requested status change is not in the transition table."""

    def __init__(self, entity_id: str, current: Any, target: Any):
        current_name = getattr(current, "value", current)
        target_name = getattr(target, "value", target)
        super().__init__(
            f"Transition {current_name} -> {target_name} is not allowed",
            entity_id,
            status=current,
        )
        self.target = target


class EntityNotFoundError(SyncError):
    """No entity exists with the given id."""

    def __init__(self, entity_id: str):
        super().__init__("Entity not found", entity_id)


class ConcurrentModificationError(SyncError):
    """Optimistic write kept losing to concurrent writers."""

    def __init__(self, entity_id: str, attempts: int):
        super().__init__(f"Entity changed concurrently {attempts} times", entity_id)
        self.attempts = attempts


class ValidationError(Exception):
    """Operator or API input that failed validation; maps to HTTP 400."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        text = f"{self.field}: {self.message}"
        if self.value is not None:
            text += f" (got: {self.value!r})"
        return text
