from typing import Any, Optional

DEVICE_LOCKED = "DEVICE_LOCKED"


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ApiError(SyncError):
    """A failed call to the resource API.

    ``status`` is the HTTP status code, or ``None`` when the request never got
    a response (network unreachable, timeout). ``payload`` is the decoded
    error body when there was one.
    """

    def __init__(self, status: Optional[int], payload: Any = None, message: Optional[str] = None):
        self.status = status
        self.payload = payload
        super().__init__(message or f"API request failed (status={status})")

    @property
    def code(self) -> Optional[str]:
        if isinstance(self.payload, dict):
            code = self.payload.get("code")
            return str(code) if code is not None else None
        return None

    @property
    def is_transport(self) -> bool:
        return self.status is None

    @property
    def is_auth_failure(self) -> bool:
        return self.status in (401, 419)

    @property
    def is_device_locked(self) -> bool:
        return self.status == 403 and self.code == DEVICE_LOCKED


class LocalEditRejected(SyncError):
    """An optimistic edit was refused by the store; state is unchanged."""

    def __init__(self, reason: str, key: Optional[str] = None):
        self.reason = reason
        self.key = key
        detail = f"{reason} ({key})" if key else reason
        super().__init__(f"local edit rejected: {detail}")


class DeviceLockedError(SyncError):
    """Another device holds write control of the session."""

    def __init__(self, message: str = "another device is active on this table", payload: Any = None):
        self.payload = payload
        super().__init__(message)


class SubmissionFailed(SyncError):
    """Order submission failed; the cart was left as the user last edited it."""

    def __init__(self, cause: Exception):
        self.cause = cause
        self.retryable = not (isinstance(cause, ApiError) and cause.is_device_locked)
        super().__init__(f"order submission failed: {cause}")


class MalformedPayload(SyncError, ValueError):
    """A server payload or push event is missing fields the engine needs."""


class ChannelAuthError(SyncError):
    """A private channel refused the subscription."""
