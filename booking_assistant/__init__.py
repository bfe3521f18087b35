"""Booking Assistant — conversational booking across third-party platforms.

Architecture Overview
=====================

A user chats over a WebSocket.  A language model reads the conversation
and emits function calls; browser automation (Playwright) executes them
against Calendly, Housecall Pro and OpenTable.  The orchestrator in
between owns three pieces of state per connection:

1. **Conversation history** — langchain-core messages, seeded with the
   system prompt on connect and discarded on disconnect.

2. **Booking session** — a small state machine
   (``idle → checking → awaiting_confirmation → booking → completed | error``)
   that owns at most one browser, keeps it across the availability check,
   the booking and the OTP step, and evicts it after ten idle minutes.

3. **Dispatch loop** — streams one model turn at a time, executes at most
   one function per turn and feeds the result back until the model
   replies with plain text.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain-anthropic`` with parallel tool use off,
  so each turn carries at most one function call.
- **Calendly fast path**: the Calendly REST API v2 answers availability and
  booking without a browser; the browser is only started if it fails.
- **OpenTable OTP**: the booking attempt runs in the background and is
  raced against a "needs a verification code" signal; the session keeps
  its browser until ``submitOTP`` arrives or the session is evicted.
- **Teardown** is one idempotent coroutine reachable from the idle timer,
  the registry's sweep and disconnects.  It waits for in-flight browser
  calls to settle before releasing the browser.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development/testing).

Package Structure
-----------------
- ``booking_assistant/agent.py`` — streaming model client and stream events
- ``booking_assistant/config.py`` — Centralized configuration from environment variables
- ``booking_assistant/functions.py`` — declared functions and their argument schemas
- ``booking_assistant/models.py`` — booking details, results, session states
- ``booking_assistant/prompts.py`` — system prompt and greeting
- ``booking_assistant/server.py`` — FastAPI application
- ``booking_assistant/main.py`` — CLI chat interface
- ``booking_assistant/services/`` — registry, dispatch loop, sessions, OTP race, clients
- ``booking_assistant/platforms/`` — one adapter per booking platform
- ``booking_assistant/tools/`` — date normalisation and field validation
- ``booking_assistant/api/`` — FastAPI routes and Pydantic schemas
"""
