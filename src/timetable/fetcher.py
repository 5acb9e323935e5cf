"""ScheduleFetcher - departments, groups, teachers and schedules behind the cache.

Fetch pipeline for one group schedule:

  cache hit? ──yes──> copy of cached time slots
     │no
  phase 1: load page with current ids (3 attempts, backoff 1s, 2s, ...)
     │TransientFetchError
  repair: re-resolve ids by department/group name, patch recipients
     │
  phase 2: load page once more with repaired ids; failure is final

Pages are loaded through the shared browser session, or with a plain HTTP
GET when ``fetch_schedule_with_browser`` is off (the schedule host answers in
Windows-1251). Teacher schedules take the same route without the repair step.

Transient, parse and stale-identity failures end as ``None`` plus a report;
callers treat ``None`` as "schedule unavailable right now".
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import date
from pathlib import Path
from typing import TypeVar

import requests
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.timetable.cache import Cache
from src.timetable.config import TimetableConfig
from src.timetable.directory import RecipientDirectory
from src.timetable.errors import ParseError, StaleIdentityError, TransientFetchError
from src.timetable.logging import get_logger
from src.timetable.models import GroupIdentity, RawTimeSlot
from src.timetable.pages.groups import GroupsPage, TeachersPage
from src.timetable.pages.schedule import SchedulePage
from src.timetable.parser import (
    CORRESPONDENCE_DEPARTMENT,
    parse_departments,
    parse_group_options,
    parse_schedule_table,
    parse_teacher_options,
)
from src.timetable.session import BrowserSession
from src.timetable.transport import ReportingSink
from src.timetable.utils import generate_headers, settle_delay

log = get_logger(__name__)

T = TypeVar("T")

BASE_URL = "https://mnokol.tyuiu.ru"
DEPARTMENTS_PAGE_URL = (
    "https://mnokol.tyuiu.ru/site/index.php?option=com_content&view=article&id=1582&Itemid=247"
)
TEACHERS_PAGE_URL = (
    "https://mnokol.tyuiu.ru/site/index.php?option=com_content&view=article&id=1247&Itemid=304"
)
SCHEDULE_HOST = "https://coworking.tyuiu.ru/shs/all_t"
SCHEDULE_ENCODING = "windows-1251"

LONG_CACHE_TIME = 30 * 24 * 60 * 60  # 1 month
TEACHERS_CACHE_TIME = 24 * 60 * 60  # 1 day


class ScheduleFetcher:
    """Scrapes departments, groups, teachers and schedules."""

    def __init__(
        self,
        session: BrowserSession,
        cache: Cache,
        directory: RecipientDirectory,
        reporter: ReportingSink,
        config: TimetableConfig,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.cache = cache
        self.directory = directory
        self.reporter = reporter
        self.config = config
        self._rng = rng or random.Random()
        self._sleep = sleep

    # -- departments, groups and teachers --------------------------------------

    async def fetch_departments(self, *, force: bool = False) -> dict[str, str]:
        """Department name -> department page URL, cached for a month."""

        async def generate() -> dict[str, str]:
            log.info("departments_fetching", url=DEPARTMENTS_PAGE_URL)
            html = await self._with_retries(
                lambda: asyncio.to_thread(self._download, DEPARTMENTS_PAGE_URL)
            )
            return parse_departments(html, BASE_URL)

        return await self.cache.fetch(
            "departments", generate, ttl=0 if force else LONG_CACHE_TIME, durable=True
        )

    async def fetch_groups(
        self, department_url: str, department_name: str, *, force: bool = False
    ) -> dict[str, dict[str, str]]:
        """Group name -> ``{"group_id", "department_id"}`` for one department."""
        if not department_url:
            raise ValueError("department_url is empty")

        async def generate() -> dict[str, dict[str, str]]:
            log.info("groups_fetching", department=department_name, url=department_url)
            options = await self._with_retries(
                lambda: self.session.run(
                    lambda page: GroupsPage(page).extract(
                        department_url, timeout=self.config.fetch_timeout_seconds
                    )
                )
            )
            return parse_group_options(options)

        return await self.cache.fetch(
            f"groups_{department_name}",
            generate,
            ttl=0 if force else LONG_CACHE_TIME,
            durable=True,
        )

    async def fetch_all_groups(self, *, force: bool = False) -> dict[str, dict[str, dict[str, str]]]:
        """Department name -> its groups, for every department."""
        departments = await self.fetch_departments(force=force)

        async def generate() -> dict[str, dict[str, dict[str, str]]]:
            log.info("all_groups_fetching", departments=len(departments))
            return {
                name: await self.fetch_groups(url, name, force=force)
                for name, url in departments.items()
            }

        return await self.cache.fetch(
            "groups", generate, ttl=0 if force else LONG_CACHE_TIME, durable=True
        )

    async def fetch_teachers(self, *, force: bool = False) -> dict[str, str]:
        """Teacher name -> teacher id, cached for a day."""

        async def generate() -> dict[str, str]:
            log.info("teachers_fetching", url=TEACHERS_PAGE_URL)
            options = await self._with_retries(
                lambda: self.session.run(
                    lambda page: TeachersPage(page).extract(
                        TEACHERS_PAGE_URL, timeout=self.config.fetch_timeout_seconds
                    )
                )
            )
            return parse_teacher_options(options)

        return await self.cache.fetch(
            "teachers", generate, ttl=0 if force else TEACHERS_CACHE_TIME, durable=True
        )

    async def resolve_identity(
        self, department_name: str, group_name: str, *, force: bool = False
    ) -> GroupIdentity:
        """Build a GroupIdentity from the stable names.

        Raises:
            StaleIdentityError: If the department or group is not listed.
        """
        departments = await self.fetch_departments(force=force)
        department_url = departments.get(department_name)
        if department_url is None:
            raise StaleIdentityError(f"Unknown department: {department_name!r}")

        groups = await self.fetch_groups(department_url, department_name, force=force)
        ids = groups.get(group_name)
        if ids is None:
            raise StaleIdentityError(f"Unknown group {group_name!r} in {department_name!r}")

        return GroupIdentity(
            department_id=ids["department_id"],
            group_id=ids["group_id"],
            department_name=department_name,
            group_name=group_name,
            is_correspondence=department_name.lower() == CORRESPONDENCE_DEPARTMENT,
        )

    async def repair_identity(self, identity: GroupIdentity) -> GroupIdentity:
        """Re-resolve stale ids by name and patch every recipient still on the old ids."""
        fresh = await self.resolve_identity(
            identity.department_name, identity.group_name, force=True
        )
        repaired = identity.model_copy(
            update={"department_id": fresh.department_id, "group_id": fresh.group_id}
        )
        log.info(
            "identity_repaired",
            group=identity.group_name,
            old=identity.cache_key,
            new=repaired.cache_key,
        )
        if repaired != identity:
            self.directory.patch_identity(identity, repaired)
        return repaired

    # -- schedules -------------------------------------------------------------

    async def fetch_schedule(self, identity: GroupIdentity) -> list[RawTimeSlot] | None:
        """Raw time slots for ``identity``, or None if the schedule is unavailable."""
        try:
            return await self.cache.fetch(
                identity.cache_key, lambda: self._fetch_schedule_two_phase(identity)
            )
        except (TransientFetchError, ParseError, StaleIdentityError) as e:
            self._report_failure(f"{identity.department_name} / {identity.group_name}", e)
            return None

    async def fetch_teacher_schedule(
        self, teacher_id: str, teacher_name: str
    ) -> list[RawTimeSlot] | None:
        """Raw time slots of one teacher across every department, or None if unavailable."""
        try:
            groups = await self.fetch_all_groups()
            department_ids = [
                next(iter(department.values()))["department_id"]
                for department in groups.values()
                if department
            ]
            url = self.teacher_schedule_url(teacher_id, [sid for sid in department_ids if sid])

            async def generate() -> list[RawTimeSlot]:
                log.info("teacher_schedule_fetching", teacher=teacher_name, url=url)
                return await self._scrape(
                    url, browser=self.config.fetch_teacher_schedule_with_browser, teacher=True
                )

            return await self.cache.fetch(f"teacher_schedule_{teacher_id}", generate)
        except (TransientFetchError, ParseError) as e:
            self._report_failure(teacher_name, e)
            return None

    async def _fetch_schedule_two_phase(self, identity: GroupIdentity) -> list[RawTimeSlot]:
        try:
            return await self._scrape_schedule(identity)
        except TransientFetchError as e:
            log.warning(
                "schedule_first_attempt_failed",
                group=identity.group_name,
                error=str(e),
                action="repairing_identity",
            )

        repaired = await self.repair_identity(identity)
        slots = await self._scrape_schedule(repaired)
        if repaired != identity:
            self.cache.set(repaired.cache_key, slots)
        return slots

    async def _scrape_schedule(self, identity: GroupIdentity) -> list[RawTimeSlot]:
        url = self.schedule_url(identity)
        log.info("schedule_fetching", group=identity.group_name, url=url)
        return await self._scrape(url, browser=self.config.fetch_schedule_with_browser)

    async def _scrape(self, url: str, *, browser: bool, teacher: bool = False) -> list[RawTimeSlot]:
        html: str | None = None
        try:
            if browser:
                html = await self._with_retries(lambda: self._load_schedule_page(url))
            else:
                html = await self._with_retries(
                    lambda: asyncio.to_thread(self._download, url, SCHEDULE_ENCODING)
                )
        except TransientFetchError as e:
            html = e.html
            raise
        finally:
            self._dump_html(html)

        slots = parse_schedule_table(html, teacher=teacher)
        if slots is None:
            raise ParseError(f"Schedule table missing: {url}")
        return slots

    async def _load_schedule_page(self, url: str) -> str:
        headers = generate_headers(self._rng, self.config.stealth_probability)
        delay = settle_delay(
            self._rng, self.config.settle_delay_min, self.config.settle_delay_max
        )
        log.debug("schedule_page_headers", user_agent=headers["User-Agent"], settle_delay=delay)
        return await self.session.run(
            lambda page: SchedulePage(page).load(
                url,
                headers=headers,
                timeout=self.config.fetch_timeout_seconds,
                settle_delay=delay,
            )
        )

    @staticmethod
    def schedule_url(identity: GroupIdentity, year: int | None = None) -> str:
        suffix = "z" if identity.is_correspondence else ""
        year = year or date.today().year
        return (
            f"{SCHEDULE_HOST}/sh{suffix}.php?action=group&union=0"
            f"&sid={identity.department_id}&gr={identity.group_id}&year={year}&vr=1"
        )

    @staticmethod
    def teacher_schedule_url(
        teacher_id: str, department_ids: list[str], year: int | None = None
    ) -> str:
        year = year or date.today().year
        departments = "".join(
            f"&shed[{index}]={sid}&union[{index}]=0&year[{index}]={year}"
            for index, sid in enumerate(department_ids)
        )
        return (
            f"{SCHEDULE_HOST}/sh.php?action=prep&prep={teacher_id}&vr=1"
            f"&count={len(department_ids)}{departments}"
        )

    # -- helpers ---------------------------------------------------------------

    async def _with_retries(self, operation: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_initial_delay),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return await operation()
        raise AssertionError("unreachable: tenacity either returns or reraises")

    def _download(self, url: str, encoding: str | None = None) -> str:
        headers = generate_headers(self._rng, self.config.stealth_probability)
        try:
            response = requests.get(
                url, headers=headers, timeout=self.config.fetch_timeout_seconds
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientFetchError(f"Failed to load {url}: {e}") from e
        if encoding is None:
            return response.text
        return response.content.decode(encoding, errors="ignore")

    def _dump_html(self, html: str | None) -> None:
        path = Path(self.config.debug_html_dump_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(html or "", encoding="utf-8")
        except OSError as e:
            log.warning("debug_dump_failed", path=str(path), error=str(e))

    def _report_failure(self, subject: str, error: Exception) -> None:
        log.error(
            "schedule_fetch_failed",
            subject=subject,
            error=str(error),
            type=type(error).__name__,
        )
        dump = Path(self.config.debug_html_dump_path)
        self.reporter.report(
            f"Failed to fetch schedule for {subject}: {error}",
            attachments=[dump] if dump.exists() else None,
        )


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "fetch_retrying",
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )
