"""Error types shared by the store, the remote client and the publisher."""

from datetime import datetime


class StreetSurveyError(Exception):
    """Base class for all street survey errors."""


class StorageError(StreetSurveyError):
    """A local store transaction aborted; nothing from it was persisted."""


# --- Publish job errors ---


class PublishError(StreetSurveyError):
    """Base class for errors raised by the publish coordinator."""


class ValidationError(PublishError):
    """Pre-publish access checks failed.

    Carries every reason found, not just the first one, so the caller can
    show the complete list to the user.
    """

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Validation failed")


class NoWorkError(PublishError):
    """The session has no unpublished captures with a payload."""


class IncompletePublishError(PublishError):
    """Finishing was requested for a session that still has items to upload."""


class AlreadyPublishingError(PublishError):
    """A publish job is already active in this process."""


class SessionNotFoundError(PublishError):
    """The requested session does not exist in the store."""


class PublishCancelledError(PublishError):
    """The publish job was cancelled while an item was waiting to retry."""


# --- Remote errors (raised at the HTTP client boundary) ---


class RemoteError(StreetSurveyError):
    """Base class for failures talking to the remote content store."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientNetworkError(RemoteError):
    """Connection failure, timeout or server-side error. Safe to retry."""


class RateLimitedError(RemoteError):
    """The remote API refused the request because of rate limiting."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        self.reset_at = reset_at
        super().__init__(message, status_code)


class PermanentItemError(RemoteError):
    """The item can never be uploaded as-is (bad payload or rejected request)."""


class ConflictError(RemoteError):
    """The remote content changed under us; the write needs a fresh identity."""
