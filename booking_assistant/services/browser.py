"""Playwright browser handle used as the automation resource.

One ``BrowserAgent`` is owned by one booking session.  It is expensive to
start (a full Chromium process), so the session keeps it across the
availability check, the booking and the OTP step: the page it holds
carries the form state the platform adapters have already filled in.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from playwright.async_api import Browser, Page, Playwright, async_playwright

from booking_assistant.config import HEADLESS, PAGE_TIMEOUT_MS, SCREENSHOT_DIR
from booking_assistant.errors import ResourceError

logger = logging.getLogger(__name__)


class BrowserAgent:
    """A headless Chromium instance with a single working page."""

    def __init__(self, *, headless: bool = HEADLESS, screenshot_dir: str = SCREENSHOT_DIR):
        self._headless = headless
        self._screenshot_dir = Path(screenshot_dir)
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    async def initialize(self) -> None:
        """Launch the browser and open a page.  Raises ``ResourceError``."""
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless, devtools=not self._headless,
            )
            self._page = await self._browser.new_page()
            self._page.set_default_timeout(PAGE_TIMEOUT_MS)
        except Exception as exc:
            logger.exception("Failed to initialize browser agent")
            await self.close()
            raise ResourceError(
                "I couldn't start the booking browser right now. Please try again in a moment."
            ) from exc
        logger.info("Browser agent initialized (headless=%s)", self._headless)

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser agent has not been initialized yet.")
        return self._page

    async def screenshot(self, label: str) -> Path:
        """Save a full-page PNG named after *label* and return its path."""
        self._screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self._screenshot_dir / f"{label}-{int(time.time() * 1000)}.png"
        await self.page.screenshot(path=str(path), full_page=True)
        logger.info("Screenshot saved: %s", path)
        return path

    async def close(self) -> None:
        """Shut the browser down.  Safe to call more than once."""
        browser, playwright = self._browser, self._playwright
        self._page = None
        self._browser = None
        self._playwright = None
        if browser is not None:
            await browser.close()
        if playwright is not None:
            await playwright.stop()


async def create_browser_agent() -> BrowserAgent:
    """Default automation-resource factory used by the connection registry."""
    agent = BrowserAgent()
    await agent.initialize()
    return agent
