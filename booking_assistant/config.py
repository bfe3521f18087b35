"""Centralized configuration for the booking assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/booking-assistant/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/booking-assistant/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _get_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _get_secret(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /booking-assistant/{name} (AWS)."
    )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.1"))
MODEL_MAX_TOKENS: int = int(os.getenv("MODEL_MAX_TOKENS", "1024"))

# ── Calendly (optional: without a token the API fast path is skipped) ─
CALENDLY_API_TOKEN: str | None = _get_secret("CALENDLY_API_TOKEN")
CALENDLY_BASE_URL: str = "https://api.calendly.com"

# ── Booking platforms ───────────────────────────────────────────────
CALENDLY_SCHEDULING_URL: str = os.getenv(
    "CALENDLY_SCHEDULING_URL", "https://calendly.com/aadhrik-myaifrontdesk/30min",
)
OPENTABLE_RESTAURANT_URL: str = os.getenv(
    "OPENTABLE_RESTAURANT_URL", "https://www.opentable.com/r/cafe-dalsace-new-york",
)
HOUSECALLPRO_BOOKING_URL: str = os.getenv(
    "HOUSECALLPRO_BOOKING_URL",
    "https://book.housecallpro.com/book/My-AI-Frontdesk/ff43037256a44791816647e0e5e9f2cd?v2=true",
)
BOOKING_TIMEZONE: str = os.getenv("BOOKING_TIMEZONE", "America/New_York")

# ── Browser automation ──────────────────────────────────────────────
HEADLESS: bool = _env_bool("HEADLESS", True)
SCREENSHOT_DIR: str = os.getenv("SCREENSHOT_DIR", "screenshots")
PAGE_TIMEOUT_MS: int = int(os.getenv("PAGE_TIMEOUT_MS", "45000"))

# ── Session lifecycle ───────────────────────────────────────────────
AGENT_SESSION_TIMEOUT_SECONDS: float = float(os.getenv("AGENT_SESSION_TIMEOUT_SECONDS", "600"))
SESSION_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "600"))
MAX_FUNCTION_ROUNDS: int = int(os.getenv("MAX_FUNCTION_ROUNDS", "10"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "3001"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
