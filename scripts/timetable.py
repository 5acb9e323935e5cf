"""Query the college timetable or run the notification service.

Standalone CLI around TimetableService. Diagnostics go to stderr so stdout
stays clean for JSON and schedule text.

Departments: python scripts/timetable.py departments
Groups:      python scripts/timetable.py groups "Отделение информационных технологий"
All groups:  python scripts/timetable.py groups
Schedule:    python scripts/timetable.py schedule "<department>" "<group>"
One day:     python scripts/timetable.py schedule "<department>" "<group>" --day 0
Left today:  python scripts/timetable.py schedule "<department>" "<group>" --left
Raw JSON:    python scripts/timetable.py schedule "<department>" "<group>" --json
Teachers:    python scripts/timetable.py teachers
Teacher:     python scripts/timetable.py teacher "Иванов Иван Иванович"
Service:     python scripts/timetable.py run
Broadcast:   python scripts/timetable.py notify "Бот будет недоступен с 22:00"
Debug:       python scripts/timetable.py debug clear_cache --durable
Headed:      python scripts/timetable.py --headed schedule "<department>" "<group>"

Exit codes:
  0 = success
  1 = error (message on stderr)
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.timetable.app import TimetableService  # noqa: E402
from src.timetable.config import get_config  # noqa: E402
from src.timetable.debug import DEFAULT_COMMANDS  # noqa: E402
from src.timetable.errors import TimetableError  # noqa: E402
from src.timetable.logging import setup_logging  # noqa: E402
from src.timetable.notifications import broadcast  # noqa: E402
from src.timetable.schedule import Schedule  # noqa: E402
from src.timetable.transport import LoggingTransport  # noqa: E402

NO_MORE_PAIRS = "Сегодня больше нет пар!"


def _log(msg: str) -> None:
    """Write diagnostic messages to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="College timetable scraper and notification service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch browser in headed mode (visible window).",
    )
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Ignore cached department and group listings.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("departments", help="List departments as JSON.")

    groups = subparsers.add_parser("groups", help="List groups as JSON (every department if omitted).")
    groups.add_argument("department", nargs="?")

    schedule = subparsers.add_parser("schedule", help="Print a group's week schedule.")
    schedule.add_argument("department")
    schedule.add_argument("group")
    view = schedule.add_mutually_exclusive_group()
    view.add_argument("--day", type=int, default=None, help="Only the day at this index.")
    view.add_argument("--left", action="store_true", help="Pairs still ahead today.")
    view.add_argument("--json", action="store_true", help="Raw time slots as JSON.")

    subparsers.add_parser("teachers", help="List teachers as JSON.")

    teacher = subparsers.add_parser("teacher", help="Print a teacher's week schedule.")
    teacher.add_argument("name")
    teacher.add_argument("--json", action="store_true", help="Raw time slots as JSON.")

    notify = subparsers.add_parser("notify", help="Send a message to every recipient (dry-run transport).")
    notify.add_argument("text")

    subparsers.add_parser("run", help="Run pair reminders and the daily digest (dry-run transport).")

    debug = subparsers.add_parser("debug", help=f"Run a debug command: {', '.join(DEFAULT_COMMANDS.names)}.")
    debug.add_argument("name")
    debug.add_argument("args", nargs=argparse.REMAINDER)

    return parser.parse_args(argv)


async def _show_schedule(service: TimetableService, args: argparse.Namespace) -> int:
    identity = await service.fetcher.resolve_identity(
        args.department, args.group, force=args.refresh
    )
    raw = await service.fetcher.fetch_schedule(identity)
    if raw is None:
        _log(f"ERROR: schedule for {identity.group_name} is unavailable")
        return 1

    if args.json:
        _print_json([slot.model_dump(mode="json") for slot in raw])
        return 0

    schedule = Schedule.from_raw(raw)
    if args.day is not None:
        if not 0 <= args.day < len(schedule):
            _log(f"ERROR: day index must be between 0 and {len(schedule) - 1}")
            return 1
        print(schedule.day(args.day).format())
    elif args.left:
        today = schedule.day_for(datetime.now(service.timezone).date())
        left = today.left(datetime.now(service.timezone)) if today is not None else None
        print(left.format() if left is not None else NO_MORE_PAIRS)
    else:
        print(schedule.format())
    return 0


async def _show_teacher_schedule(service: TimetableService, args: argparse.Namespace) -> int:
    teachers = await service.fetcher.fetch_teachers(force=args.refresh)
    teacher_id = teachers.get(args.name)
    if teacher_id is None:
        _log(f"ERROR: unknown teacher {args.name!r}")
        return 1

    raw = await service.fetcher.fetch_teacher_schedule(teacher_id, args.name)
    if raw is None:
        _log(f"ERROR: schedule for {args.name} is unavailable")
        return 1
    if args.json:
        _print_json([slot.model_dump(mode="json") for slot in raw])
    else:
        print(Schedule.from_raw(raw).format())
    return 0


async def _run_command(service: TimetableService, args: argparse.Namespace) -> int:
    if args.command == "departments":
        _print_json(await service.fetcher.fetch_departments(force=args.refresh))
        return 0

    service.session.start()
    try:
        await service.session.wait_ready()
        if args.command == "groups":
            if args.department is None:
                _print_json(await service.fetcher.fetch_all_groups(force=args.refresh))
                return 0
            departments = await service.fetcher.fetch_departments(force=args.refresh)
            url = departments.get(args.department)
            if url is None:
                _log(f"ERROR: unknown department {args.department!r}")
                return 1
            _print_json(await service.fetcher.fetch_groups(url, args.department, force=args.refresh))
            return 0
        if args.command == "schedule":
            return await _show_schedule(service, args)
        if args.command == "teachers":
            _print_json(await service.fetcher.fetch_teachers(force=args.refresh))
            return 0
        if args.command == "teacher":
            return await _show_teacher_schedule(service, args)
        if args.command == "debug":
            print(await DEFAULT_COMMANDS.run(args.name, service.debug_context, args.args))
            return 0
    finally:
        await service.session.stop()
    return 1


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    config = get_config()
    if args.headed:
        config = config.model_copy(update={"headless": False})
    setup_logging(json_output=config.log_json, log_level=config.log_level)

    service = TimetableService(config, LoggingTransport())
    if args.command == "run":
        _log("Starting notification service (Ctrl+C to stop)...")
        await service.run_forever()
        return 0
    if args.command == "notify":
        delivered = await broadcast(service.directory, service.transport, service.pool, args.text)
        _log(f"Sent notification to {delivered} of {len(service.directory)} chats")
        return 0
    return await _run_command(service, args)


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        _log("Interrupted")
        sys.exit(1)
    except (TimetableError, KeyError, ValueError) as e:
        _log(f"ERROR: {e}")
        sys.exit(1)
