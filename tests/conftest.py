"""Shared test configuration for the booking assistant test suite.

Fakes for the model, adapters, browser and connection live in
``tests/fakes.py``.
"""

from __future__ import annotations

import os


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("CALENDLY_API_TOKEN", "test-calendly-token-456")
    os.environ.setdefault("METRICS_ENABLED", "false")
