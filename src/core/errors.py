"""Error taxonomy of the messaging core.

Nothing here is fatal to the process; every failure degrades to the last
known good state with a retry available.
"""

from __future__ import annotations

from typing import Optional


class MessagingError(Exception):
    """Base class for all messaging core errors."""


class TransportUnavailable(MessagingError):
    """The push connection is down."""


class PermissionDenied(MessagingError):
    """A send, edit or delete was attempted against the channel policy."""


class StaleResponse(MessagingError):
    """A response arrived after the context that requested it changed."""


class ReconciliationConflict(MessagingError):
    """An update references a message that is not present locally."""


class HistoryUnavailable(MessagingError):
    """History could not be fetched; the caller may retry."""

    retryable = True


class ApiError(MessagingError):
    """The request/response collaborator answered with a failure."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
