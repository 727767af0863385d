from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from playwright.async_api import Page, async_playwright

from app.config import settings
from app.core.logging import get_logger

logger = get_logger()

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]  # For CI/CD and containers
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}


@asynccontextmanager
async def browser_page(
    storage_state: Optional[Dict[str, Any]] = None,
    *,
    headless: Optional[bool] = None,
) -> AsyncIterator[Page]:
    """
    One browser, one context, one page; all closed on exit.

    Nothing is pooled: each publish or scrape gets its own browser, optionally
    restored from a stored ``storage_state``.
    """
    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=settings.PLAYWRIGHT_HEADLESS if headless is None else headless,
            args=LAUNCH_ARGS,
        )
        try:
            context = await browser.new_context(
                storage_state=storage_state,
                viewport=DEFAULT_VIEWPORT,
                user_agent=DEFAULT_USER_AGENT,
                locale="ko-KR",
            )
            try:
                page = await context.new_page()
                await page.set_extra_http_headers({"Accept-Language": "ko-KR,ko;q=0.9,en;q=0.8"})
                yield page
            finally:
                await context.close()
        finally:
            await browser.close()
            logger.debug("browser_closed")
