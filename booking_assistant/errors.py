"""Exception hierarchy for the booking assistant.

Messages of ``BookingAssistantError`` subclasses are written for the end
user and are shown verbatim in the chat.  Anything else is treated as an
internal failure and replaced by a generic message.
"""

from __future__ import annotations


class BookingAssistantError(Exception):
    """Base class for errors whose message is safe to show the user."""


class ResourceError(BookingAssistantError):
    """The browser automation resource could not be started."""


class AdapterError(BookingAssistantError):
    """A platform adapter call failed; the session has been released."""

    def __init__(self, message: str, platform: str | None = None):
        self.platform = platform
        super().__init__(message)


class ProtocolViolationError(BookingAssistantError):
    """A function was called out of order (e.g. an OTP with nothing pending)."""


class ConnectionClosedError(BookingAssistantError):
    """Work was attempted on behalf of a connection that is already gone."""


class DispatchError(BookingAssistantError):
    """The function dispatch loop could not finish the turn."""


class OtpAbandonedError(Exception):
    """Raised inside a booking attempt whose verification code will never arrive."""
