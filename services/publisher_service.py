"""
Tistory publish action (Playwright).

``BlogPublisher.authenticate`` performs the full login and returns the browser
storage_state; ``BlogPublisher.publish`` opens a context from a stored session,
writes or edits one post and reports the post id it ended up on. A redirect to
the login page means the stored session is no longer accepted.
"""

from __future__ import annotations

import re
from typing import Any, AsyncContextManager, Callable, Dict, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from app.config import require_blog_credentials, settings
from app.core.errors import AuthenticationError, PublishFailedError, SessionExpiredError
from app.core.logging import get_logger
from app.models.post_queue import PostQueueEntry, PostType, PublishResult
from services.browser_service import browser_page
from services.publish_session_service import SessionHandle

logger = get_logger()

LOGIN_ID_SELECTOR = 'input[name="loginId"]'
PASSWORD_SELECTOR = 'input[name="password"]'
SUBMIT_SELECTOR = 'button[type="submit"]'
TITLE_SELECTOR = 'input[name="title"]'
HTML_MODE_SELECTOR = "button.html-mode"
EDITOR_SELECTOR = '.editor-content, .write-box, [contenteditable="true"]'
TAG_SELECTOR = 'input[name="tag"]'
PUBLISH_BUTTON_SELECTORS = (
    "button.btn-publish",
    "button.publish",
    'button:has-text("발행")',
    "text=발행",
)
SUCCESS_SELECTOR = ".success-message, .complete"

NAV_TIMEOUT_MS = 30_000
ELEMENT_TIMEOUT_MS = 10_000

_POST_ID_RE = re.compile(r"/(\d+)/?$")

PageFactory = Callable[[Optional[Dict[str, Any]]], AsyncContextManager[Page]]


def is_login_url(url: str, login_url: str) -> bool:
    current = urlparse(url)
    login = urlparse(login_url)
    if current.netloc == login.netloc and current.path.rstrip("/") == login.path.rstrip("/"):
        return True
    return "/auth/login" in current.path


def extract_post_id(url: str) -> Optional[str]:
    path = urlparse(url).path
    match = _POST_ID_RE.search(path)
    return match.group(1) if match else None


def editor_url(blog_url: str, entry: PostQueueEntry) -> str:
    base = blog_url.rstrip("/")
    if entry.post_type is PostType.REVISION and entry.original_post_id:
        return f"{base}/manage/newpost/{entry.original_post_id}"
    return f"{base}/manage/newpost"


class BlogPublisher:
    def __init__(
        self,
        *,
        blog_url: Optional[str] = None,
        login_url: Optional[str] = None,
        login_id: Optional[str] = None,
        password: Optional[str] = None,
        page_factory: PageFactory = browser_page,
    ) -> None:
        if blog_url is None or login_id is None or password is None:
            blog_url, login_id, password = require_blog_credentials()
        self.blog_url = blog_url.rstrip("/")
        self.login_url = login_url or settings.BLOG_LOGIN_URL
        self.login_id = login_id
        self.password = password
        self.page_factory = page_factory

    async def authenticate(self) -> Dict[str, Any]:
        async with self.page_factory(None) as page:
            try:
                await page.goto(self.login_url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
                await page.fill(LOGIN_ID_SELECTOR, self.login_id)
                await page.fill(PASSWORD_SELECTOR, self.password)
                async with page.expect_navigation(wait_until="domcontentloaded", timeout=15_000):
                    await page.click(SUBMIT_SELECTOR)
            except PlaywrightError as exc:
                raise AuthenticationError(f"login flow failed: {exc}") from exc

            if is_login_url(page.url, self.login_url):
                raise AuthenticationError("still on the login page after submitting credentials")

            state = await page.context.storage_state()
            logger.info("blog_login_succeeded")
            return state

    async def publish(self, entry: PostQueueEntry, handle: SessionHandle) -> PublishResult:
        target = editor_url(self.blog_url, entry)
        async with self.page_factory(handle.storage_state) as page:
            try:
                await page.goto(target, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
            except PlaywrightError as exc:
                raise PublishFailedError(f"editor did not load: {exc}") from exc

            if is_login_url(page.url, self.login_url):
                raise SessionExpiredError(f"redirected to login from {target}")

            try:
                await self._fill_post(page, entry)
                await self._click_publish(page)
                await page.locator(SUCCESS_SELECTOR).first.wait_for(timeout=ELEMENT_TIMEOUT_MS)
            except PlaywrightTimeoutError as exc:
                raise PublishFailedError(f"publish not confirmed: {exc}") from exc
            except PlaywrightError as exc:
                raise PublishFailedError(str(exc)) from exc

            external_id = extract_post_id(page.url) or entry.original_post_id
            logger.info(
                "blog_post_published",
                entry_id=entry.id,
                post_type=entry.post_type.value,
                external_post_id=external_id,
            )
            return PublishResult(success=True, external_id=external_id)

    async def _fill_post(self, page: Page, entry: PostQueueEntry) -> None:
        await page.wait_for_selector(TITLE_SELECTOR, timeout=ELEMENT_TIMEOUT_MS)
        await page.fill(TITLE_SELECTOR, entry.title)

        html_mode = page.locator(HTML_MODE_SELECTOR)
        if await html_mode.count() > 0:
            await html_mode.first.click()
            await page.wait_for_timeout(500)

        await page.wait_for_selector(EDITOR_SELECTOR, timeout=ELEMENT_TIMEOUT_MS)
        await page.evaluate(
            """({ selector, content }) => {
                const editor = document.querySelector(selector);
                if (editor) { editor.innerHTML = content; }
            }""",
            {"selector": EDITOR_SELECTOR, "content": entry.html_body},
        )

        tag_input = page.locator(TAG_SELECTOR)
        if entry.tags and await tag_input.count() > 0:
            for tag in entry.tags:
                await tag_input.first.fill(tag)
                await page.keyboard.press("Enter")
                await page.wait_for_timeout(200)

    async def _click_publish(self, page: Page) -> None:
        for selector in PUBLISH_BUTTON_SELECTORS:
            button = page.locator(selector).first
            if await button.count() > 0:
                await button.click()
                logger.debug("blog_publish_clicked", selector=selector)
                return
        raise PublishFailedError("no publish button found")
