"""TimetableService - wires the cache, browser, fetcher and notification loops.

Long-lived tasks while running:
  - browser session owner (BrowserSession)
  - APScheduler cron jobs for pre-lesson reminders
  - daily digest loop
  - recipient directory backup loop
"""

import asyncio
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.timetable.cache import Cache
from src.timetable.config import TimetableConfig
from src.timetable.debug import DebugContext
from src.timetable.directory import JsonRecipientDirectory
from src.timetable.errors import ConfigurationError
from src.timetable.fetcher import ScheduleFetcher
from src.timetable.logging import get_logger
from src.timetable.notifications import DailyDigest, PairNotifier
from src.timetable.pool import WorkerPool
from src.timetable.session import BrowserSession
from src.timetable.transport import ChatTransport, LogReporter, ReportingSink

log = get_logger(__name__)


class TimetableService:
    """Owns every component and their background tasks."""

    def __init__(
        self,
        config: TimetableConfig,
        transport: ChatTransport,
        *,
        reporter: ReportingSink | None = None,
        directory: JsonRecipientDirectory | None = None,
    ) -> None:
        try:
            self.timezone = ZoneInfo(config.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {config.timezone!r}") from e

        self.config = config
        self.transport = transport
        self.reporter = reporter or LogReporter()
        self.directory = directory or JsonRecipientDirectory.load(config.recipients_path)
        self.cache = Cache(
            config.cache_path,
            default_ttl=config.default_ttl,
            disabled=config.caching_disabled,
        )
        self.session = BrowserSession(
            headless=config.headless, timeout=config.fetch_timeout_seconds
        )
        self.pool = WorkerPool(config.worker_pool_size)
        self.fetcher = ScheduleFetcher(
            self.session, self.cache, self.directory, self.reporter, config
        )
        self.pair_notifier = PairNotifier(
            self.fetcher, self.directory, transport, self.pool, timezone=self.timezone
        )
        self.digest = DailyDigest(
            self.fetcher,
            self.directory,
            transport,
            self.pool,
            self.reporter,
            self.cache,
            timezone=self.timezone,
            interval=config.digest_interval,
        )

        self.scheduler: AsyncIOScheduler | None = None
        self._stop: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def debug_context(self) -> DebugContext:
        return DebugContext(
            cache=self.cache,
            fetcher=self.fetcher,
            directory=self.directory,
            pair_notifier=self.pair_notifier,
        )

    async def start(self) -> None:
        """Launch the browser, register cron jobs and start the loops."""
        log.info("service_starting", recipients=len(self.directory))
        self.session.start()
        await self.session.wait_ready()

        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        self.pair_notifier.schedule(self.scheduler)
        self.scheduler.start()

        self._stop = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self.digest.run(self._stop), name="daily-digest"),
            asyncio.create_task(
                self.directory.save_loop(self._stop, self.config.recipients_save_interval),
                name="recipients-backup",
            ),
        ]
        self.reporter.report("Service started.")
        log.info("service_started")

    async def stop(self) -> None:
        """Stop triggers and loops, drain deliveries, save recipients, close the browser."""
        log.info("service_stopping")
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._stop is not None:
            self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        await self.pool.close()
        self.directory.save()
        await self.session.stop()
        self.reporter.report("Service stopped.")
        log.info("service_stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
