"""Async client for the Calendly API v2: the Calendly adapter's fast path.

When the API can answer an availability check or a booking, no browser is
started at all.  Transient failures (timeouts, connection errors, 5xx) are
retried with exponential backoff; 4xx responses are not.

Calendly API docs: https://developer.calendly.com/api-docs/
All requests require a Personal Access Token passed as a Bearer token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from booking_assistant.config import CALENDLY_API_TOKEN, CALENDLY_BASE_URL
from booking_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class CalendlyAPIError(Exception):
    """Raised when a Calendly API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _backoff(attempt: int) -> float:
    return INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))


class CalendlyClient:
    """Calendly REST calls needed to check and book one event type.

    The user URI and the event-type list do not change while the process
    runs, so both are fetched once per client.  Availability is always
    fetched fresh.
    """

    def __init__(self, token: str | None = None, base_url: str | None = None):
        self._token = token or CALENDLY_API_TOKEN
        if not self._token:
            raise CalendlyAPIError("CALENDLY_API_TOKEN is not configured")
        self._base_url = base_url or CALENDLY_BASE_URL
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._user_uri: str | None = None
        self._event_types: list[dict[str, Any]] | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Transport ────────────────────────────────────────────────────

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code >= 400:
            kind = "Server" if response.status_code >= 500 else "Client"
            raise CalendlyAPIError(
                f"{kind} error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request, retrying transient failures."""
        operation = f"{method} {path.split('?')[0]}"
        t0 = time.perf_counter()
        last_error: Exception | None = None

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._send(method, path, params=params, json=json_body)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Calendly %s attempt %d/%d failed (%s)",
                    operation, attempt, MAX_RETRIES, type(exc).__name__,
                )
            except CalendlyAPIError as exc:
                if (exc.status_code or 0) < 500:
                    metrics.record_failure(
                        "calendly", operation, error_type="4xx",
                        latency_ms=(time.perf_counter() - t0) * 1000,
                    )
                    raise
                last_error = exc
                logger.warning("Calendly %s server error on attempt %d/%d", operation, attempt, MAX_RETRIES)
            else:
                metrics.record_success("calendly", operation, latency_ms=(time.perf_counter() - t0) * 1000)
                return response.json()

            await asyncio.sleep(_backoff(attempt))

        metrics.record_failure(
            "calendly", operation, error_type=type(last_error).__name__,
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
        raise CalendlyAPIError(f"Calendly API request failed after {MAX_RETRIES} retries: {last_error}")

    # ── Lookups ──────────────────────────────────────────────────────

    async def get_current_user_uri(self) -> str:
        if self._user_uri is None:
            data = await self._request("GET", "/users/me")
            self._user_uri = data["resource"]["uri"]
        return self._user_uri

    async def get_event_types(self) -> list[dict[str, Any]]:
        """Active event types of the token's user."""
        if self._event_types is None:
            data = await self._request(
                "GET",
                "/event_types",
                params={"user": await self.get_current_user_uri(), "active": "true"},
            )
            self._event_types = data.get("collection", [])
        return self._event_types

    async def find_event_type_uri(self, scheduling_url: str) -> str:
        """Return the URI of the event type behind a public scheduling page.

        Falls back to the first active event type when no scheduling URL
        matches (accounts with a single event type).
        """
        event_types = await self.get_event_types()
        if not event_types:
            raise CalendlyAPIError("No active event types found for this Calendly account.")
        wanted = scheduling_url.rstrip("/").lower()
        for event_type in event_types:
            if event_type.get("scheduling_url", "").rstrip("/").lower() == wanted:
                return event_type["uri"]
        return event_types[0]["uri"]

    # ── Availability and booking ─────────────────────────────────────

    async def get_available_times(
        self,
        event_type_uri: str,
        start_time: str,
        end_time: str,
    ) -> list[dict[str, Any]]:
        """Slots of *event_type_uri* between two ISO 8601 datetimes.

        Each slot is a dict with ``start_time`` and ``status``.  Calendly
        limits the range to seven days and rejects a start in the past.
        """
        data = await self._request(
            "GET",
            "/event_type_available_times",
            params={"event_type": event_type_uri, "start_time": start_time, "end_time": end_time},
        )
        return data.get("collection", [])

    async def create_invitee(
        self,
        event_type_uri: str,
        start_time: str,
        *,
        name: str,
        email: str,
        timezone: str,
    ) -> dict[str, Any]:
        """Book *start_time* (UTC, ISO 8601) by adding an invitee.

        The event type's first configured location, if any, is sent along
        because Calendly rejects bookings of located events without one.
        Returns the invitee resource.
        """
        path = event_type_uri.replace(self._base_url, "")
        event_type = await self._request("GET", path)
        locations = event_type.get("resource", {}).get("locations") or []

        payload: dict[str, Any] = {
            "event_type": event_type_uri,
            "start_time": start_time,
            "invitee": {"name": name, "email": email, "timezone": timezone},
        }
        if locations:
            payload["location"] = {"kind": locations[0]["kind"], "location": locations[0].get("location", "")}

        data = await self._request("POST", "/invitees", json_body=payload)
        return data["resource"]


# ── Module-level client ─────────────────────────────────────────────
_client: CalendlyClient | None = None


def get_calendly_client() -> CalendlyClient:
    """Return the shared client, creating it on first use.

    Raises ``CalendlyAPIError`` when no API token is configured.
    """
    global _client
    if _client is None:
        _client = CalendlyClient()
    return _client


async def close_calendly_client() -> None:
    """Close the shared client's connection pool, if one was created."""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
