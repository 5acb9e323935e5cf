"""Playwright browser session owned by a single background task.

BrowserSession launches one Chromium instance and serializes every scraping
operation through a request queue: callers submit ``async (page) -> T``
operations and await the result, each operation gets a fresh page, and no two
operations ever touch the browser at the same time.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from playwright.async_api import async_playwright

from src.timetable.logging import get_logger
from src.timetable.utils import configure_page_for_scraping

if TYPE_CHECKING:
    from playwright.async_api import Browser, Page

logger = get_logger(__name__)

T = TypeVar("T")

PageOperation = Callable[["Page"], Awaitable[T]]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    FETCHING = "fetching"
    STOPPED = "stopped"


class BrowserSession:
    """Exclusively owned Chromium session served by one background task."""

    def __init__(self, *, headless: bool = True, timeout: float = 30) -> None:
        """Initialize BrowserSession.

        Args:
            headless: Launch Chromium without a window.
            timeout: Default page timeout in seconds.
        """
        self.headless = headless
        self.timeout = timeout
        self.state = SessionState.UNINITIALIZED
        self._queue: asyncio.Queue[tuple[PageOperation[Any], asyncio.Future] | None] | None = None
        self._ready: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None

    @property
    def ready(self) -> bool:
        return self.state in (SessionState.READY, SessionState.FETCHING)

    def start(self) -> None:
        """Spawn the owner task. Must be called from a running event loop."""
        if self._task is not None:
            return
        self._queue = asyncio.Queue()
        self._ready = asyncio.Event()
        self.state = SessionState.LAUNCHING
        self._task = asyncio.create_task(self._serve(), name="browser-session")
        logger.info("browser_launching", headless=self.headless)

    async def wait_ready(self) -> None:
        """Block until the browser is launched.

        Raises:
            RuntimeError: If the session was never started or has stopped.
        """
        if self._ready is None:
            raise RuntimeError("Browser session is not started")
        await self._ready.wait()
        if not self.ready:
            raise RuntimeError(f"Browser session is {self.state.value}") from self._error

    async def run(self, operation: PageOperation[T]) -> T:
        """Run ``operation`` on a fresh page once every earlier operation is done."""
        await self.wait_ready()
        assert self._queue is not None

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((operation, future))
        return await future

    async def stop(self) -> None:
        """Finish the queued operations, close the browser and join the owner task."""
        if self._task is None:
            return
        if not self._task.done():
            assert self._queue is not None
            await self._queue.put(None)
        await self._task
        logger.info("browser_stopped")

    async def _serve(self) -> None:
        assert self._queue is not None and self._ready is not None
        try:
            async with async_playwright() as playwright:
                browser = await playwright.chromium.launch(
                    headless=self.headless, timeout=self.timeout * 1000
                )
                self.state = SessionState.READY
                self._ready.set()
                logger.info("browser_ready")
                try:
                    await self._serve_requests(browser)
                finally:
                    await browser.close()
        except Exception as e:
            self._error = e
            logger.error("browser_session_failed", error=str(e), type=type(e).__name__)
        finally:
            self.state = SessionState.STOPPED
            self._ready.set()
            self._fail_pending()

    async def _serve_requests(self, browser: "Browser") -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                return
            operation, future = item
            if future.cancelled():
                continue

            self.state = SessionState.FETCHING
            try:
                result = await self._run_on_page(browser, operation)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self.state = SessionState.READY

    async def _run_on_page(self, browser: "Browser", operation: PageOperation[T]) -> T:
        page = await browser.new_page()
        try:
            await configure_page_for_scraping(page, timeout_ms=self.timeout * 1000)
            return await operation(page)
        finally:
            await page.close()

    def _fail_pending(self) -> None:
        assert self._queue is not None
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                continue
            _, future = item
            if not future.done():
                future.set_exception(RuntimeError("Browser session stopped"))
