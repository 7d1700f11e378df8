"""
Publisher endpoints, request headers and the portal browser.

The spreadsheet host is plain HTTPS and served through requests
(downloader.core).  The research portal used as the fallback path needs a
real browser; each PortalBrowser owns its own Playwright instance, browser
and context, so sessions of different families never share a page.
"""

import logging
import os

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/vnd.ms-excel,application/vnd.openxmlformats-officedocument."
              "spreadsheetml.sheet,application/octet-stream;q=0.9,*/*;q=0.8",
    "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7",
}


# ── Playwright browser (portal fallback) ──


def _headless_default() -> bool:
    return os.environ.get("PLAYWRIGHT_HEADLESS", "true").lower() in (
        "1", "true", "yes",
    )


class PortalBrowser:
    """A Playwright browser context owned by one portal session.

    The sync API is bound to the thread that started it, so a browser is
    never shared between sessions.
    """

    def __init__(self, headless: bool | None = None):
        self.headless = _headless_default() if headless is None else headless
        self._pw = None
        self._browser = None
        self.context = None

    def start(self):
        """Launch the browser and return its context (idempotent)."""
        if self.context is not None:
            return self.context

        from playwright.sync_api import sync_playwright

        logger.info("Starting browser for the research portal (headless=%s)", self.headless)
        try:
            self._pw = sync_playwright().start()
            self._browser = self._pw.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
            self.context = self._browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1920, "height": 1080},
                locale="pt-BR",
            )
            self.context.add_init_script(
                'Object.defineProperty(navigator, "webdriver", {get: () => undefined})'
            )
        except BaseException:
            self.close()
            raise
        return self.context

    def close(self) -> None:
        """Close the browser and stop Playwright."""
        try:
            if self._browser is not None:
                self._browser.close()
            if self._pw is not None:
                self._pw.stop()
        finally:
            self._pw = self._browser = self.context = None
