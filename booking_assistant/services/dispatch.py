"""Function dispatch loop: one inbound message, one streamed reply.

Each round streams a model turn over the connection's history.  A turn
either ends in plain text (the reply; the loop exits) or in a single
function call, which is executed and whose result is fed back for the
next round.  A function-call turn and its result enter the history
together, and only once the function has returned, so a failed call
leaves the history exactly as it was.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from booking_assistant.agent import FunctionCallDelta, LanguageModelClient, TextDelta
from booking_assistant.api.schemas import ServerMessage
from booking_assistant.config import MAX_FUNCTION_ROUNDS
from booking_assistant.errors import BookingAssistantError, ConnectionClosedError, DispatchError
from booking_assistant.functions import (
    FUNCTION_SPECS,
    BookAppointmentArgs,
    CheckAvailabilityArgs,
    FunctionName,
    NormalizeBookingDateArgs,
    SubmitOtpArgs,
    ValidateBookingDetailsArgs,
    parse_arguments,
    resolve_function,
)
from booking_assistant.models import AdapterResult
from booking_assistant.prompts import FALLBACK_REPLY
from booking_assistant.services.context import ConnectionContext
from booking_assistant.tools.dates import normalize_booking_date
from booking_assistant.tools.validation import validate_booking_details

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong on our side. Please try again."

Handler = Callable[[ConnectionContext, Any], Awaitable[Any]]


# ── Handlers ─────────────────────────────────────────────────────────


async def _normalize_date(ctx: ConnectionContext, args: NormalizeBookingDateArgs) -> dict:
    return normalize_booking_date(args.dateStr)


async def _validate_details(ctx: ConnectionContext, args: ValidateBookingDetailsArgs) -> dict:
    return validate_booking_details(**args.model_dump())


async def _check_availability(ctx: ConnectionContext, args: CheckAvailabilityArgs):
    return await ctx.flow.check_availability(args.to_details())


async def _book_appointment(ctx: ConnectionContext, args: BookAppointmentArgs):
    return await ctx.flow.book_appointment(args.to_details())


async def _submit_otp(ctx: ConnectionContext, args: SubmitOtpArgs):
    return await ctx.flow.submit_otp(args.otp)


HANDLERS: dict[FunctionName, Handler] = {
    FunctionName.NORMALIZE_BOOKING_DATE: _normalize_date,
    FunctionName.VALIDATE_BOOKING_DETAILS: _validate_details,
    FunctionName.CHECK_AVAILABILITY: _check_availability,
    FunctionName.BOOK_APPOINTMENT: _book_appointment,
    FunctionName.SUBMIT_OTP: _submit_otp,
}

if set(HANDLERS) != set(FUNCTION_SPECS):
    raise RuntimeError("Every declared function needs exactly one handler")


def _as_payload(result: Any) -> dict[str, Any]:
    if isinstance(result, AdapterResult):
        return result.to_payload()
    return result


def _call_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ── Loop ─────────────────────────────────────────────────────────────


class FunctionDispatcher:
    def __init__(self, model: LanguageModelClient, *, max_rounds: int = MAX_FUNCTION_ROUNDS):
        self._model = model
        self._max_rounds = max_rounds

    async def run_turn(self, ctx: ConnectionContext, text: str) -> None:
        """Handle one user message end to end.

        Every failure is reported to the connection as a single error
        message; only cancellation propagates.
        """
        ctx.history.append(HumanMessage(content=text))
        try:
            await self._loop(ctx)
        except asyncio.CancelledError:
            raise
        except BookingAssistantError as exc:
            logger.warning("[%s] Turn failed: %s", ctx.id, exc)
            await ctx.send(ServerMessage.failure(str(exc)))
        except Exception:
            logger.exception("[%s] Turn failed", ctx.id)
            await ctx.send(ServerMessage.failure(GENERIC_FAILURE))

    async def _loop(self, ctx: ConnectionContext) -> None:
        executed = 0
        while True:
            if ctx.closed:
                raise ConnectionClosedError("The connection is closed.")

            text_parts: list[str] = []
            name: str | None = None
            call_id: str | None = None
            argument_parts: list[str] = []
            async for event in self._model.stream_turn(ctx.history):
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                elif isinstance(event, FunctionCallDelta):
                    name = name or event.name
                    call_id = call_id or event.call_id
                    argument_parts.append(event.arguments)
            text = "".join(text_parts)

            if name is None:
                reply = text.strip() or FALLBACK_REPLY
                ctx.history.append(AIMessage(content=reply))
                await ctx.send(ServerMessage.reply(reply))
                return

            if executed >= self._max_rounds:
                raise DispatchError("I couldn't finish that request. Please try rephrasing it.")
            executed += 1

            if text.strip():
                await ctx.send(ServerMessage.reply(text))
            arguments = "".join(argument_parts)
            result = await self._execute(ctx, name, arguments)

            call_id = call_id or f"call_{uuid.uuid4().hex[:12]}"
            ctx.history.append(
                AIMessage(
                    content=text,
                    tool_calls=[{"name": name, "args": _call_arguments(arguments), "id": call_id}],
                )
            )
            ctx.history.append(ToolMessage(content=json.dumps(result), tool_call_id=call_id))

    async def _execute(self, ctx: ConnectionContext, name: str, arguments: str) -> dict[str, Any]:
        spec = resolve_function(name)
        if spec is None:
            logger.warning("[%s] Model called unknown function %r", ctx.id, name)
            return {"success": False, "message": f"Unknown function: {name}"}

        if spec.announcement and spec.name not in ctx.announced:
            ctx.announced.add(spec.name)
            await ctx.send(ServerMessage.reply(spec.announcement))

        args = parse_arguments(spec, arguments)
        if isinstance(args, AdapterResult):
            logger.info("[%s] Invalid arguments for %s", ctx.id, spec.name.value)
            return _as_payload(args)

        logger.info("[%s] Executing %s", ctx.id, spec.name.value)
        if spec.needs_automation:
            await ctx.send(ServerMessage.status(True))
        try:
            result = await HANDLERS[spec.name](ctx, args)
        finally:
            if spec.needs_automation:
                await ctx.send(ServerMessage.status(False))
        return _as_payload(result)
