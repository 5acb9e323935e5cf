"""Time-triggered notifications: pre-lesson reminders and the daily digest.

PairNotifier registers one cron job per lesson start (15 minutes ahead,
Monday to Saturday). DailyDigest ticks every minute and sends each recipient
their week schedule when their configured time passes. Both fan out through
the shared WorkerPool and isolate failures per group and per recipient.
`broadcast` sends one operator message to every known recipient.
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, tzinfo
from time import monotonic
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.timetable.cache import Cache
from src.timetable.directory import RecipientDirectory
from src.timetable.errors import DeliveryError
from src.timetable.fetcher import ScheduleFetcher
from src.timetable.logging import get_logger
from src.timetable.models import (
    TEACHING_KINDS,
    DailySendingReport,
    GroupIdentity,
    Pair,
    PairContent,
    Recipient,
)
from src.timetable.pool import WorkerPool
from src.timetable.schedule import Schedule, shorten_teacher_name
from src.timetable.transport import ChatTransport, ReportingSink

log = get_logger(__name__)

PAIR_START_TIMES: tuple[time, ...] = (
    time(8, 0),
    time(9, 45),
    time(11, 30),
    time(13, 45),
    time(15, 30),
    time(17, 15),
    time(19, 0),
)
NOTIFY_BEFORE = timedelta(minutes=15)

PAIR_MESSAGE = "Следующая пара в кабинете {classroom}:\n{discipline}\n{teacher}"
LOADING_TEXT = "Загружаю..."
NO_PAIRS_THIS_WEEK = "На этой неделе нет пар!"
OUTDATED_DISCLAIMER = (
    "Не удалось обновить расписание, *оно может быть неактуальным!* Попробуйте позже."
)
UNAVAILABLE_TEXT = "Не удалось загрузить расписание. Попробуйте позже."


def render_pair_message(pair: Pair) -> str | None:
    """Render the "next lesson" text for teaching pairs; None for every other kind."""
    if pair.kind not in TEACHING_KINDS:
        return None
    content = pair.content if isinstance(pair.content, PairContent) else PairContent()
    return PAIR_MESSAGE.format(
        classroom=content.classroom or "—",
        discipline=content.discipline or "",
        teacher=shorten_teacher_name(content.teacher),
    )


def group_recipients(recipients: Iterable[Recipient]) -> dict[GroupIdentity, list[Recipient]]:
    groups: dict[GroupIdentity, list[Recipient]] = defaultdict(list)
    for recipient in recipients:
        if recipient.identity is not None:
            groups[recipient.identity].append(recipient)
    return dict(groups)


async def deliver_text(
    transport: ChatTransport, recipient_id: int, text: str, **options: Any
) -> Any:
    """Send one message, wrapping any transport failure in DeliveryError."""
    try:
        return await transport.send_text(recipient_id, text, **options)
    except Exception as e:
        raise DeliveryError(recipient_id, str(e)) from e


async def broadcast(
    directory: RecipientDirectory,
    transport: ChatTransport,
    pool: WorkerPool,
    text: str,
) -> int:
    """Send ``text`` to every known recipient.

    Returns:
        Number of chats the message reached.
    """
    recipients = list(directory.all_recipients())
    log.info("broadcast_started", recipients=len(recipients))

    async def send(recipient: Recipient) -> None:
        await deliver_text(transport, recipient.id, text)

    results = await pool.map(send, recipients)
    delivered = 0
    for recipient, result in zip(recipients, results):
        if isinstance(result, BaseException):
            log.error("broadcast_delivery_failed", recipient=recipient.id, error=str(result))
        else:
            delivered += 1

    log.info("broadcast_finished", delivered=delivered, failed=len(recipients) - delivered)
    return delivered


class PairNotifier:
    """Sends "next lesson" reminders before every lesson start."""

    def __init__(
        self,
        fetcher: ScheduleFetcher,
        directory: RecipientDirectory,
        transport: ChatTransport,
        pool: WorkerPool,
        *,
        timezone: tzinfo,
    ) -> None:
        self.fetcher = fetcher
        self.directory = directory
        self.transport = transport
        self.pool = pool
        self.timezone = timezone

    def schedule(self, scheduler: AsyncIOScheduler) -> None:
        """Register one Mon-Sat cron job per lesson start, 15 minutes ahead."""
        for start in PAIR_START_TIMES:
            send_at = datetime.combine(date.min, start) - NOTIFY_BEFORE
            scheduler.add_job(
                self.notify,
                CronTrigger(
                    day_of_week="mon-sat",
                    hour=send_at.hour,
                    minute=send_at.minute,
                    timezone=self.timezone,
                ),
                args=[start],
                id=f"pair_notification_{start:%H%M}",
                replace_existing=True,
                coalesce=True,
                misfire_grace_time=5 * 60,
            )
            log.debug("pair_notification_scheduled", start=f"{start:%H:%M}", at=f"{send_at:%H:%M}")

    async def notify(
        self,
        start: time,
        *,
        recipients: Iterable[Recipient] | None = None,
        today: date | None = None,
    ) -> int:
        """Remind every subscribed recipient about the lesson starting at ``start``.

        Returns:
            Number of messages delivered.
        """
        today = today or datetime.now(self.timezone).date()
        at = datetime.combine(today, start)
        if recipients is None:
            recipients = (r for r in self.directory.all_recipients() if r.pair_notifications)
        groups = group_recipients(recipients)
        log.info("pair_notification_started", start=f"{start:%H:%M}", groups=len(groups))

        deliveries: list[tuple[Recipient, str]] = []
        for identity, members in groups.items():
            try:
                text = await self._message_for_group(identity, at)
            except Exception as e:
                log.error(
                    "pair_notification_group_failed",
                    group=identity.group_name,
                    error=str(e),
                    type=type(e).__name__,
                )
                continue
            if text is not None:
                deliveries.extend((member, text) for member in members)

        results = await self.pool.map(self._deliver, deliveries)
        delivered = 0
        for (recipient, _), result in zip(deliveries, results):
            if isinstance(result, BaseException):
                log.error("pair_notification_delivery_failed", recipient=recipient.id, error=str(result))
            else:
                delivered += 1

        log.info(
            "pair_notification_finished",
            start=f"{start:%H:%M}",
            delivered=delivered,
            failed=len(deliveries) - delivered,
        )
        return delivered

    async def _message_for_group(self, identity: GroupIdentity, at: datetime) -> str | None:
        raw = await self.fetcher.fetch_schedule(identity)
        if raw is None:
            log.error("pair_notification_schedule_unavailable", group=identity.group_name)
            return None

        today = Schedule.from_raw(raw).day_for(at.date())
        current = today.now(at) if today is not None else None
        pair = current.first_pair() if current is not None else None
        if pair is None:
            log.debug("pair_notification_no_pair", group=identity.group_name)
            return None

        text = render_pair_message(pair)
        if text is None:
            log.debug("pair_notification_not_teaching", group=identity.group_name, kind=pair.kind.value)
        return text

    async def _deliver(self, delivery: tuple[Recipient, str]) -> None:
        recipient, text = delivery
        await deliver_text(self.transport, recipient.id, text)


class DailyDigest:
    """Sends each recipient's week schedule at their configured time of day."""

    def __init__(
        self,
        fetcher: ScheduleFetcher,
        directory: RecipientDirectory,
        transport: ChatTransport,
        pool: WorkerPool,
        reporter: ReportingSink,
        cache: Cache,
        *,
        timezone: tzinfo,
        interval: float = 60,
    ) -> None:
        self.fetcher = fetcher
        self.directory = directory
        self.transport = transport
        self.pool = pool
        self.reporter = reporter
        self.cache = cache
        self.timezone = timezone
        self.interval = interval
        self.last_tick: datetime | None = None

    def due_recipients(self, last: datetime, current: datetime) -> list[Recipient]:
        """Recipients whose daily time falls in ``(last, current]``."""
        due = []
        for recipient in self.directory.all_recipients():
            if not recipient.daily_send_time or recipient.identity is None:
                continue
            try:
                send_time = datetime.strptime(recipient.daily_send_time, "%H:%M").time()
            except ValueError:
                log.warning(
                    "daily_send_time_invalid",
                    recipient=recipient.id,
                    value=recipient.daily_send_time,
                )
                continue
            candidates = {
                datetime.combine(day, send_time, tzinfo=current.tzinfo)
                for day in (last.date(), current.date())
            }
            if any(last < candidate <= current for candidate in candidates):
                due.append(recipient)
        return due

    async def tick(self, now: datetime | None = None) -> list[DailySendingReport]:
        """Send every digest due since the previous tick and advance the window."""
        now = now or datetime.now(self.timezone)
        last = self.last_tick or now - 2 * timedelta(seconds=self.interval)
        try:
            due = self.due_recipients(last, now)
            if not due:
                return []
            started = monotonic()
            results = await self.pool.map(self._send_digest, due)
            log.debug(
                "daily_digest_batch",
                recipients=len(due),
                seconds=round(monotonic() - started, 3),
            )
            return [r for r in results if isinstance(r, DailySendingReport)]
        finally:
            self.last_tick = now

    async def run(self, stop: asyncio.Event) -> None:
        """Tick every ``interval`` seconds until ``stop`` is set."""
        log.info("daily_digest_started", interval=self.interval)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                log.error("daily_digest_tick_failed", error=str(e), type=type(e).__name__)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        log.info("daily_digest_stopped")

    async def _send_digest(self, recipient: Recipient) -> DailySendingReport:
        started = monotonic()
        ok = False
        try:
            ok = await self.send_week_schedule(recipient)
            log.debug("daily_digest_sent", recipient=recipient.id, ok=ok)
        except Exception as e:
            message = f"Error while sending daily schedule to {recipient.id}: {e}"
            log.error("daily_digest_failed", recipient=recipient.id, error=str(e), type=type(e).__name__)
            self.reporter.report(message)

        report = DailySendingReport(
            configured_time=recipient.daily_send_time or "",
            process_time=monotonic() - started,
            ok=ok,
            timestamp=datetime.now(self.timezone),
        )
        self.directory.push_daily_report(recipient.id, report)
        return report

    async def send_week_schedule(self, recipient: Recipient) -> bool:
        """Deliver the full-week schedule.

        Falls back to the last successful rendering with a disclaimer when the
        schedule cannot be fetched.

        Returns:
            True if a fresh schedule was delivered.
        """
        identity = recipient.identity
        if identity is None:
            raise ValueError(f"Recipient {recipient.id} has no group")

        loading_id = await deliver_text(self.transport, recipient.id, LOADING_TEXT)
        try:
            raw = await self.fetcher.fetch_schedule(identity)
            rendering_key = f"rendering_{identity.department_name}_{identity.group_name}"

            if raw is not None:
                schedule = Schedule.from_raw(raw)
                text = NO_PAIRS_THIS_WEEK if schedule.all_empty() else schedule.format()
                self.cache.set(rendering_key, text, durable=True)
                await deliver_text(self.transport, recipient.id, text, parse_mode="Markdown")
                return True

            previous = self.cache.get(rendering_key, durable=True)
            if previous:
                await deliver_text(self.transport, recipient.id, previous, parse_mode="Markdown")
                await deliver_text(
                    self.transport, recipient.id, OUTDATED_DISCLAIMER, parse_mode="Markdown"
                )
            else:
                await deliver_text(self.transport, recipient.id, UNAVAILABLE_TEXT)
            self.reporter.report(
                f"Daily schedule for {identity.department_name} / {identity.group_name} "
                f"is unavailable; sent {'cached copy' if previous else 'apology'} to {recipient.id}"
            )
            return False
        finally:
            if loading_id is not None:
                await self._delete_loading(recipient.id, loading_id)

    async def _delete_loading(self, recipient_id: int, message_id: Any) -> None:
        # Must not mask the outcome of the send it follows
        try:
            await self.transport.delete_message(recipient_id, message_id)
        except Exception as e:
            log.warning(
                "loading_message_delete_failed",
                recipient=recipient_id,
                error=str(e),
                type=type(e).__name__,
            )
