"""Domain types shared by the orchestrator, the adapters and the API.

All models serialise with camelCase keys (``missingFields``,
``isReadyToConfirm``...) because that is what the language model sees in
function results and what the chat client receives.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class Platform(str, Enum):
    """Third-party booking platforms the assistant can drive."""

    CALENDLY = "calendly"
    HOUSECALLPRO = "housecallpro"
    OPENTABLE = "opentable"


class SessionState(str, Enum):
    """Booking progress of one connection's session."""

    IDLE = "idle"
    CHECKING = "checking"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    BOOKING = "booking"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ERROR)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """Serialise for the model / the client, dropping unset extras."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, dict):
        return not value
    return False


class BookingDetails(_CamelModel):
    """Accumulated booking fields for one session.

    Fields arrive piecemeal across turns; :meth:`merge` applies a later
    batch on top of what is already known.
    """

    name: str | None = None
    email: str | None = None
    date: str | None = None
    time: str | None = None
    platform: Platform | None = None
    phone: str | None = None
    address: str | None = None
    service_category: str | None = None
    service_type: str | None = None
    service_details: str | None = None
    party_size: int | None = None
    occasion: str | None = None
    special_requests: str | None = None
    custom_fields: dict[str, str] = Field(default_factory=dict)
    selected_time: str | None = None
    is_ready_to_confirm: bool | None = None

    def merge(self, other: BookingDetails) -> BookingDetails:
        """Overwrite fields with *other*'s non-empty values, in place.

        An absent or blank field in *other* never clears a known value.
        Custom fields are merged key by key.
        """
        for field_name in type(self).model_fields:
            value = getattr(other, field_name)
            if _is_empty(value):
                continue
            if field_name == "custom_fields":
                merged = dict(self.custom_fields)
                merged.update({k: v for k, v in value.items() if not _is_empty(v)})
                self.custom_fields = merged
            else:
                setattr(self, field_name, value)
        return self

    def missing(self, required: list[str]) -> list[str]:
        """Return the names in *required* that are still empty."""
        return [name for name in required if _is_empty(getattr(self, name))]


class MissingField(_CamelModel):
    """A field the user still has to provide."""

    label: str
    required: bool = True


class AdapterResult(_CamelModel):
    """Common shape of availability and booking outcomes.

    ``error`` is set by an adapter's direct-API fast path when it could
    not answer; the orchestrator then retries with a browser.
    """

    success: bool
    message: str = ""
    missing_fields: list[MissingField] | None = None
    needs_otp: bool | None = Field(default=None, alias="needsOTP")
    selected_time: str | None = None
    is_ready_to_confirm: bool | None = None
    error: str | None = None

    @property
    def needs_fallback(self) -> bool:
        return not self.success and bool(self.error)


class AvailabilityResult(AdapterResult):
    """Outcome of ``checkAvailability``."""

    available_slots: list[str] | None = None


class BookingResult(AdapterResult):
    """Outcome of ``bookAppointment`` / ``submitOTP``.

    ``needs_otp`` means "not done yet": such a result is never successful.
    """

    confirmation: str | None = None

    @model_validator(mode="after")
    def _otp_means_not_done(self) -> BookingResult:
        if self.success and self.needs_otp:
            raise ValueError("a booking result cannot both succeed and need an OTP")
        return self


def missing_fields_result(labels: list[str], message: str = "Missing required booking information") -> BookingResult:
    """Build the validation-error result the model uses to ask follow-ups."""
    return BookingResult(
        success=False,
        message=message,
        missing_fields=[MissingField(label=label) for label in labels],
    )
