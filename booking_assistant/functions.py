"""The function set declared to the language model.

Each function has a pydantic argument model (its schema is what the model
is shown, and what arguments are validated against before dispatch), a
short announcement sent to the user before it runs, and a flag saying
whether it goes through the session state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from booking_assistant.models import BookingDetails, BookingResult, Platform, missing_fields_result


# Inline enum in the schema (no $defs) for the model.
PlatformName = Literal["calendly", "housecallpro", "opentable"]


class FunctionName(str, Enum):
    NORMALIZE_BOOKING_DATE = "normalizeBookingDate"
    VALIDATE_BOOKING_DETAILS = "validateBookingDetails"
    CHECK_AVAILABILITY = "checkAvailability"
    BOOK_APPOINTMENT = "bookAppointment"
    SUBMIT_OTP = "submitOTP"


# ── Argument schemas ─────────────────────────────────────────────────


class NormalizeBookingDateArgs(BaseModel):
    dateStr: str = Field(..., description="The date string to normalize")


class ValidateBookingDetailsArgs(BaseModel):
    name: str = Field(..., description="Full name of the person booking")
    email: str = Field(..., description="Email address for the booking")
    date: str = Field(..., description="Date for the booking in YYYY-MM-DD format")
    time: str = Field(..., description="Time for the booking in HH:mm format (24-hour)")
    platform: PlatformName = Field(..., description="The booking platform to use")


class CheckAvailabilityArgs(BaseModel):
    name: str = Field(..., description="Name of the person booking")
    email: str = Field(..., description="Email address for the booking")
    date: str = Field(..., description="Date for the booking in YYYY-MM-DD format")
    time: str = Field(..., description="Time for the booking in HH:mm format (24-hour)")
    platform: PlatformName = Field(..., description="The booking platform to use")
    partySize: int | None = Field(None, description="Number of guests (OpenTable)")
    service: str | None = Field(None, description="Service type (Housecall Pro)")

    def to_details(self) -> BookingDetails:
        return BookingDetails(
            name=self.name,
            email=self.email,
            date=self.date,
            time=self.time,
            platform=Platform(self.platform),
            party_size=self.partySize,
            service_type=self.service,
        )


class BookAppointmentArgs(BaseModel):
    name: str = Field(..., description="Full name of the person booking")
    email: str = Field(..., description="Email address for the booking")
    platform: PlatformName = Field(..., description="The booking platform to use")
    date: str | None = Field(
        None, description="Date in YYYY-MM-DD format (required for Calendly and OpenTable)",
    )
    time: str | None = Field(
        None, description="Time in HH:mm format, 24-hour (required for Calendly and OpenTable)",
    )
    serviceCategory: str | None = Field(
        None, description="Service category (e.g. Plumbing, Appliances) for Housecall Pro",
    )
    serviceType: str | None = Field(
        None, description="Specific service type (e.g. Leak Detection) for Housecall Pro",
    )
    serviceDetails: str | None = Field(
        None, description="Additional details about the service/equipment for Housecall Pro",
    )
    phone: str | None = Field(None, description="Phone number (required for Housecall Pro and OpenTable)")
    address: str | None = Field(None, description="Service address (required for Housecall Pro)")
    partySize: int | None = Field(None, description="Number of guests for OpenTable reservation")
    occasion: str | None = Field(None, description="Special occasion (Birthday, Anniversary...) for OpenTable")
    specialRequests: str | None = Field(None, description="Special requests or notes for OpenTable")
    customFields: dict[str, str] | None = Field(
        None, description="Any additional custom fields required by the form",
    )

    def to_details(self) -> BookingDetails:
        return BookingDetails(
            name=self.name,
            email=self.email,
            platform=Platform(self.platform),
            date=self.date,
            time=self.time,
            service_category=self.serviceCategory,
            service_type=self.serviceType,
            service_details=self.serviceDetails,
            phone=self.phone,
            address=self.address,
            party_size=self.partySize,
            occasion=self.occasion,
            special_requests=self.specialRequests,
            custom_fields=self.customFields or {},
        )


class SubmitOtpArgs(BaseModel):
    otp: str = Field(..., min_length=1, description="The OTP code received by the user")


# ── Declarations ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class FunctionSpec:
    name: FunctionName
    description: str
    args_model: type[BaseModel]
    announcement: str | None = None
    needs_automation: bool = False

    def as_tool(self) -> dict[str, Any]:
        """OpenAI-style function definition accepted by ``bind_tools``."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": schema,
            },
        }


FUNCTION_SPECS: dict[FunctionName, FunctionSpec] = {
    spec.name: spec
    for spec in (
        FunctionSpec(
            FunctionName.NORMALIZE_BOOKING_DATE,
            "Validate and normalize a date string into a consistent format",
            NormalizeBookingDateArgs,
            announcement="Let me check that date for you.",
        ),
        FunctionSpec(
            FunctionName.VALIDATE_BOOKING_DETAILS,
            "Validate all booking details before proceeding with booking",
            ValidateBookingDetailsArgs,
            announcement="Let me validate those booking details.",
        ),
        FunctionSpec(
            FunctionName.CHECK_AVAILABILITY,
            "Check if a time slot is available on the selected platform. "
            "Housecall Pro needs no availability check.",
            CheckAvailabilityArgs,
            announcement="I'll check if that time slot is available.",
            needs_automation=True,
        ),
        FunctionSpec(
            FunctionName.BOOK_APPOINTMENT,
            "Book the appointment on the selected platform.",
            BookAppointmentArgs,
            announcement="I'll process your service request now.",
            needs_automation=True,
        ),
        FunctionSpec(
            FunctionName.SUBMIT_OTP,
            "Submit OTP code for OpenTable verification",
            SubmitOtpArgs,
            announcement="I will submit the OTP code for verification.",
            needs_automation=True,
        ),
    )
}


def tool_definitions() -> list[dict[str, Any]]:
    """All declared functions, in declaration order, for the model."""
    return [spec.as_tool() for spec in FUNCTION_SPECS.values()]


def resolve_function(name: str) -> FunctionSpec | None:
    try:
        return FUNCTION_SPECS[FunctionName(name)]
    except ValueError:
        return None


def parse_arguments(spec: FunctionSpec, raw_arguments: str) -> BaseModel | BookingResult:
    """Validate the model's argument string against *spec*.

    Returns the parsed argument model, or a ``missingFields`` result the
    model can act on when the arguments are malformed or incomplete.
    """
    try:
        return spec.args_model.model_validate_json(raw_arguments or "{}")
    except ValidationError as exc:
        labels: list[str] = []
        problems: list[str] = []
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "arguments"
            if error["type"] == "missing":
                labels.append(field)
            else:
                problems.append(f"{field}: {error['msg']}")
        message = "Invalid arguments for " + spec.name.value
        if problems:
            message += " (" + "; ".join(problems) + ")"
        return missing_fields_result(labels, message=message)
