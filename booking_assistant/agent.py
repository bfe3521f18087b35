"""Streaming language-model client for the booking assistant.

Architecture:
  The dispatch loop (``services/dispatch.py``) drives the conversation
  itself; this module only turns "stream one model turn over this
  history" into a flat sequence of events:

    * ``TextDelta``          — a fragment of reply text
    * ``FunctionCallDelta``  — a fragment of the (single) function call:
                               the first one carries its name and id, all
                               of them carry argument JSON fragments
    * ``TurnEnd``            — the stream is over; ``reason`` is
                               ``"tool_use"`` when a call is ready

  The production client wraps ``ChatAnthropic`` bound to the declared
  functions with parallel tool use disabled, so a turn carries at most one
  function call.  Tests substitute a scripted client with the same
  ``stream_turn`` signature.

  History is a list of langchain-core messages (``SystemMessage``,
  ``HumanMessage``, ``AIMessage``, ``ToolMessage``) owned by the
  connection.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, Union

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessageChunk, BaseMessage

from booking_assistant.config import ANTHROPIC_API_KEY, MODEL_MAX_TOKENS, MODEL_NAME, MODEL_TEMPERATURE
from booking_assistant.functions import tool_definitions
from booking_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)


# ── Stream events ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class FunctionCallDelta:
    name: str | None
    arguments: str = ""
    call_id: str | None = None


@dataclass(frozen=True)
class TurnEnd:
    reason: str


ModelEvent = Union[TextDelta, FunctionCallDelta, TurnEnd]


class LanguageModelClient(Protocol):
    def stream_turn(self, history: list[BaseMessage]) -> AsyncIterator[ModelEvent]:
        """Stream one model turn over *history*."""
        ...


# ── Chunk conversion ─────────────────────────────────────────────────


def _chunk_text(content: Any) -> str:
    """Extract the plain text carried by a streamed chunk's content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


class _ChunkConverter:
    """Turns ``AIMessageChunk``s into ``ModelEvent``s for one turn."""

    def __init__(self) -> None:
        self.call_index: int | None = None
        self.stop_reason: str | None = None

    def convert(self, chunk: AIMessageChunk) -> list[ModelEvent]:
        events: list[ModelEvent] = []
        text = _chunk_text(chunk.content)
        if text:
            events.append(TextDelta(text))

        for call in chunk.tool_call_chunks:
            index = call.get("index")
            if self.call_index is None:
                self.call_index = index
            elif index != self.call_index:
                logger.warning("Ignoring extra function call %r in a single turn", call.get("name"))
                continue
            events.append(
                FunctionCallDelta(
                    name=call.get("name"),
                    arguments=call.get("args") or "",
                    call_id=call.get("id"),
                )
            )

        stop_reason = (chunk.response_metadata or {}).get("stop_reason")
        if stop_reason:
            self.stop_reason = stop_reason
        return events

    def end(self) -> TurnEnd:
        if self.call_index is not None:
            return TurnEnd("tool_use")
        return TurnEnd(self.stop_reason or "end_turn")


# ── Production client ────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the primary LLM with the booking functions bound."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,  # Low temperature for consistent function arguments
        max_tokens=MODEL_MAX_TOKENS,
    )
    return llm.bind_tools(tool_definitions(), parallel_tool_calls=False)


class AnthropicModelClient:
    def __init__(self, llm=None):
        self._llm = llm if llm is not None else _build_llm()

    async def stream_turn(self, history: list[BaseMessage]) -> AsyncIterator[ModelEvent]:
        converter = _ChunkConverter()
        t0 = time.perf_counter()
        try:
            async for chunk in self._llm.astream(history):
                for event in converter.convert(chunk):
                    yield event
        except Exception as exc:
            metrics.record_failure(
                "anthropic", "stream_turn", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        metrics.record_success("anthropic", "stream_turn", latency_ms=(time.perf_counter() - t0) * 1000)
        end = converter.end()
        logger.debug("Model turn ended: %s", end.reason)
        yield end
