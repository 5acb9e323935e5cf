"""Debug commands, looked up in an explicit registry.

Every handler is an ``async (context, args) -> str`` function; the registry
is validated when it is built, so a typo fails at startup instead of when an
operator first calls the command.
"""

import inspect
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from src.timetable.cache import Cache
from src.timetable.directory import JsonRecipientDirectory
from src.timetable.fetcher import ScheduleFetcher
from src.timetable.logging import get_logger
from src.timetable.notifications import PairNotifier
from src.timetable.schedule import Schedule

log = get_logger(__name__)


@dataclass
class DebugContext:
    cache: Cache
    fetcher: ScheduleFetcher
    directory: JsonRecipientDirectory
    pair_notifier: PairNotifier


DebugHandler = Callable[[DebugContext, list[str]], Awaitable[str]]


class DebugCommands:
    """Name -> handler registry."""

    def __init__(self, handlers: Mapping[str, DebugHandler]) -> None:
        for name, handler in handlers.items():
            if not name.isidentifier():
                raise ValueError(f"Invalid debug command name: {name!r}")
            if not inspect.iscoroutinefunction(handler):
                raise TypeError(f"Debug command {name!r} must be an async function")
        self._handlers = dict(handlers)

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def run(self, name: str, context: DebugContext, args: list[str] | None = None) -> str:
        """Run the command called ``name``.

        Raises:
            KeyError: If no such command is registered.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"Debug command {name!r} not found. Available: {', '.join(self.names)}")
        log.info("debug_command", name=name, args=args or [])
        return await handler(context, list(args or []))


async def clear_cache(context: DebugContext, args: list[str]) -> str:
    durable = "--durable" in args
    context.cache.clear(durable=durable)
    return "Cache cleared" + (" (including durable tier)" if durable else "")


async def fetch_schedule(context: DebugContext, args: list[str]) -> str:
    if len(args) != 2:
        return "Usage: fetch_schedule <department> <group>"
    identity = await context.fetcher.resolve_identity(args[0], args[1])
    raw = await context.fetcher.fetch_schedule(identity)
    if raw is None:
        return f"Schedule for {identity.group_name} is unavailable"
    return Schedule.from_raw(raw).format()


async def recipient_info(context: DebugContext, args: list[str]) -> str:
    if len(args) != 1 or not args[0].lstrip("-").isdigit():
        return "Usage: recipient_info <recipient id>"
    recipient = context.directory.get(int(args[0]))
    if recipient is None:
        return f"Recipient {args[0]} not found"
    return json.dumps(recipient.model_dump(mode="json"), ensure_ascii=False, indent=2)


async def send_pair_notification(context: DebugContext, args: list[str]) -> str:
    if not args or not args[0].lstrip("-").isdigit():
        return "Usage: send_pair_notification <recipient id> [HH:MM]"
    recipient = context.directory.get(int(args[0]))
    if recipient is None:
        return f"Recipient {args[0]} not found"

    start = (
        datetime.strptime(args[1], "%H:%M").time()
        if len(args) > 1
        else datetime.now(context.pair_notifier.timezone).time()
    )
    delivered = await context.pair_notifier.notify(start, recipients=[recipient])
    return f"Delivered {delivered} pair notification(s)"


DEFAULT_COMMANDS = DebugCommands(
    {
        "clear_cache": clear_cache,
        "fetch_schedule": fetch_schedule,
        "recipient_info": recipient_info,
        "send_pair_notification": send_pair_notification,
    }
)
