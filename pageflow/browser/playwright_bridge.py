from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page, async_playwright
from tenacity import RetryError, retry, retry_if_exception_type, retry_if_result, stop_after_attempt, wait_exponential

from pageflow.browser.bridge import DOM_MUTATED, LOAD_FINISHED, PageBridge
from pageflow.browser.scripts import HELPER_SCRIPT, NOTIFY_BINDING
from pageflow.browser.session_store import SessionStore
from pageflow.errors import ScriptEvaluationError

logger = logging.getLogger(__name__)

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 14_5_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/14.1 Mobile/15E148 Safari/604.1"
)
DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_6) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/14.0.2 Safari/605.1.15"
)
MOBILE_VIEWPORT = {"width": 400, "height": 1000}
DESKTOP_VIEWPORT = {"width": 1500, "height": 1000}

COOKIES_KEY = "cookies"


class PlaywrightBridge(PageBridge):
    def __init__(self, page: Page, store: SessionStore, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__(loop or asyncio.get_running_loop())
        self.page = page
        self.store = store
        self.iframe_sources: list[str] = []
        self._tasks: set[asyncio.Task[None]] = set()

    async def install(self) -> None:
        """Hook the page up: helper script, notifications, load events, cookies."""
        await self.restore_cookies()
        await self.page.expose_binding(NOTIFY_BINDING, self._on_notify)
        await self.page.add_init_script(HELPER_SCRIPT)
        self.page.on("load", self._on_load)
        # Frames that already exist did not run the init script.
        for frame in self.page.frames:
            try:
                await frame.evaluate(HELPER_SCRIPT)
            except PlaywrightError as exc:
                logger.debug("Could not prepare frame %s: %s", frame.url, exc)

    @property
    def main_frame(self) -> Frame:
        return self.page.main_frame

    async def evaluate(self, script: str, frame: Any = None) -> Any:
        target = frame or self.page.main_frame
        try:
            return await target.evaluate(script)
        except PlaywrightError as exc:
            raise ScriptEvaluationError(script, str(exc)) from exc

    async def resolve_frame(self, selector: str, parent: Any = None) -> Frame:
        try:
            return await self._find_frame(selector, parent or self.page.main_frame)
        except RetryError:
            logger.warning("Could not identify iframe %s, using the main frame", selector)
            return self.page.main_frame

    @retry(
        retry=retry_if_result(lambda frame: frame is None) | retry_if_exception_type(PlaywrightError),
        stop=stop_after_attempt(8),
        wait=wait_exponential(multiplier=0.2, max=2),
    )
    async def _find_frame(self, selector: str, parent: Frame) -> Frame | None:
        handle = await parent.query_selector(selector)
        if handle is None:
            return None
        try:
            return await handle.content_frame()
        finally:
            await handle.dispose()

    async def set_content_mode(self, mobile: bool) -> None:
        user_agent = MOBILE_USER_AGENT if mobile else DESKTOP_USER_AGENT
        await self.page.set_extra_http_headers({"User-Agent": user_agent})
        await self.page.set_viewport_size(MOBILE_VIEWPORT if mobile else DESKTOP_VIEWPORT)

    async def open_url(self, url: str, mobile: bool) -> None:
        await self.set_content_mode(mobile)
        await self.page.goto(url, wait_until="commit")

    async def insert_text(self, text: str) -> None:
        await self.page.keyboard.insert_text(text)

    async def deliver_file(self, selector: str, path: Path, frame: Any = None) -> None:
        target = frame or self.page.main_frame
        await target.set_input_files(selector, str(path))

    async def reset(self) -> None:
        try:
            await self.page.goto("about:blank")
        except PlaywrightError as exc:
            logger.warning("Could not reset page: %s", exc)

    async def restore_cookies(self) -> None:
        cookies = self.store.load(COOKIES_KEY)
        if isinstance(cookies, list) and cookies:
            await self.page.context.add_cookies(cookies)
            logger.debug("Restored %d cookies", len(cookies))

    async def persist_cookies(self) -> None:
        cookies = await self.page.context.cookies()
        self.store.save(COOKIES_KEY, cookies)

    def _on_load(self, page: Page) -> None:
        self.emit(LOAD_FINISHED, {"url": page.url})
        task = self.loop.create_task(self._persist_quietly())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist_quietly(self) -> None:
        try:
            await self.persist_cookies()
        except PlaywrightError as exc:
            logger.debug("Could not persist cookies: %s", exc)

    def _on_notify(self, source: Any, name: str, payload: Any = None) -> None:
        if name != DOM_MUTATED:
            logger.debug("Ignoring page notification %s", name)
            return
        iframes = payload.get("iframes", []) if isinstance(payload, dict) else []
        self.iframe_sources = [str(src) for src in iframes if src]
        self.emit(DOM_MUTATED, {"iframes": self.iframe_sources})


@asynccontextmanager
async def launch_bridge(store: SessionStore, *, headless: bool = True) -> AsyncIterator[PlaywrightBridge]:
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=headless)
        try:
            context = await browser.new_context(viewport=DESKTOP_VIEWPORT, user_agent=DESKTOP_USER_AGENT)
            page = await context.new_page()
            bridge = PlaywrightBridge(page, store)
            await bridge.install()
            yield bridge
        finally:
            await browser.close()
