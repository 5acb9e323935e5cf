"""SchedulePage - loads a group's rendered timetable.

The schedule host renders the table client-side and rejects obvious bots, so
every load sets rotated headers, waits a randomized settle delay and only
then waits for the table.

DOM structure:
  table#main_table
    tr (first) -> td per column; columns 3+ are day headers
                  (date, weekday, week type as separate text nodes)
    tr.para_num -> td pair number, td time range, td per day
"""

import asyncio

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from src.timetable.errors import TransientFetchError
from src.timetable.logging import get_logger

log = get_logger(__name__)


class SchedulePage:
    """Group schedule page on coworking.tyuiu.ru."""

    SCHEDULE_TABLE = "#main_table"

    def __init__(self, page: Page) -> None:
        self.page = page

    async def load(
        self,
        url: str,
        *,
        headers: dict[str, str],
        timeout: float,
        settle_delay: float = 0,
    ) -> str:
        """Navigate to ``url`` and return the page HTML once the table rendered.

        Args:
            url: Schedule URL for one group.
            headers: Extra HTTP headers for this navigation.
            timeout: Seconds for navigation and for the table to appear.
            settle_delay: Seconds to idle between navigation and the table wait.

        Raises:
            TransientFetchError: On a navigation failure or table timeout;
                carries the HTML observed so far.
        """
        html: str | None = None
        try:
            await self.page.set_extra_http_headers(headers)
            await self.page.goto(url, timeout=timeout * 1000)
            html = await self.page.content()

            if settle_delay > 0:
                await asyncio.sleep(settle_delay)

            await self.page.wait_for_selector(self.SCHEDULE_TABLE, timeout=timeout * 1000)
            html = await self.page.content()
        except PlaywrightTimeoutError as e:
            log.warning("schedule_page_timeout", url=url, error=str(e))
            raise TransientFetchError(f"Schedule page timed out: {url}", html=html) from e
        except PlaywrightError as e:
            # net::ERR_* navigation failures, closed pages and the like
            log.warning("schedule_page_failed", url=url, error=str(e))
            raise TransientFetchError(f"Schedule page failed: {url}: {e}", html=html) from e

        log.debug("schedule_page_loaded", url=url, size=len(html))
        return html
