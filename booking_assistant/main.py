"""CLI entry point for the booking assistant.

This provides a simple terminal-based chat interface for testing and
development.  It drives the same connection registry as the WebSocket
server, so browsers and sessions behave exactly as they do in production.
For production, use the FastAPI server (booking_assistant/server.py).

Usage:
    uv run python -m booking_assistant.main            # normal mode (quiet)
    uv run python -m booking_assistant.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Always keep our own logger at INFO minimum so session events show
    logging.getLogger("booking_assistant").setLevel(logging.DEBUG if debug else logging.INFO)


class ConsoleConnection:
    """Prints outbound frames to the terminal."""

    def __init__(self) -> None:
        self.id = f"cli-{uuid.uuid4().hex[:8]}"

    async def send(self, payload: dict[str, Any]) -> None:
        if "executingScript" in payload:
            if payload["executingScript"]:
                print("   (working on it in the browser...)")
            return
        prefix = "Assistant" if not payload.get("error") else "Assistant [error]"
        print(f"\n{prefix}: {payload.get('text', '')}\n")


async def _chat() -> None:
    from booking_assistant.agent import AnthropicModelClient
    from booking_assistant.platforms.registry import default_adapters
    from booking_assistant.services.registry import ConnectionRegistry

    registry = ConnectionRegistry(AnthropicModelClient(), default_adapters())
    registry.start()
    connection = ConsoleConnection()
    await registry.on_connect(connection)
    logger.info("Started new session: %s", connection.id)
    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            if user_input.lower() == "new":
                await registry.on_disconnect(connection.id)
                connection = ConsoleConnection()
                print(f"\n>> New session started: {connection.id}\n")
                await registry.on_connect(connection)
                continue

            await registry.on_message(connection.id, user_input)
    finally:
        await registry.close()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Booking Assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Booking Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("  Send a JSON envelope such as {\"type\": \"cancel_booking\"} to")
    print("  exercise the other client events.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
