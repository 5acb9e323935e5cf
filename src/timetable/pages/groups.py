"""GroupsPage and TeachersPage - selector lists embedded in college articles.

A department article embeds an iframe with a ``select#groups`` whose options
carry the group id in ``value`` and the department id in a ``sid`` attribute.
The teachers article embeds the same kind of iframe with ``select#preps``.
A placeholder option with value "0" heads each list.
"""

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from src.timetable.errors import TransientFetchError
from src.timetable.logging import get_logger

log = get_logger(__name__)


class GroupsPage:
    """Department page with the embedded groups selector."""

    IFRAME = "div.com-content-article__body iframe"
    SELECT = "#groups"
    OPTIONS_SCRIPT = (
        "els => els.map(el => ({ text: el.textContent.trim(), value: el.value,"
        " sid: el.getAttribute('sid') }))"
    )

    def __init__(self, page: Page) -> None:
        self.page = page

    async def extract(self, url: str, *, timeout: float) -> list[dict[str, str]]:
        """Return one dict per option of the embedded selector.

        Groups yield ``{"text", "value", "sid"}``.

        Raises:
            TransientFetchError: If navigation fails or the page, iframe or
                selector does not appear in time.
        """
        try:
            await self.page.goto(url, timeout=timeout * 1000)
            iframe = await self.page.wait_for_selector(self.IFRAME, timeout=timeout * 1000)
            frame = await iframe.content_frame() if iframe else None
            if frame is None:
                raise TransientFetchError(f"Selector iframe not found: {url}")

            select = await frame.wait_for_selector(self.SELECT, timeout=timeout * 1000)
            if select is None:
                raise TransientFetchError(f"Selector {self.SELECT} not found: {url}")

            options = await frame.eval_on_selector_all(f"{self.SELECT} option", self.OPTIONS_SCRIPT)
        except PlaywrightTimeoutError as e:
            log.warning("selector_page_timeout", url=url, select=self.SELECT, error=str(e))
            raise TransientFetchError(f"Selector page timed out: {url}") from e
        except PlaywrightError as e:
            log.warning("selector_page_failed", url=url, select=self.SELECT, error=str(e))
            raise TransientFetchError(f"Selector page failed: {url}: {e}") from e

        log.debug("selector_options_extracted", url=url, select=self.SELECT, count=len(options))
        return options


class TeachersPage(GroupsPage):
    """Teachers article; options yield ``{"text", "value"}`` with the teacher id."""

    SELECT = "#preps"
    OPTIONS_SCRIPT = "els => els.map(el => ({ text: el.textContent.trim(), value: el.value }))"
