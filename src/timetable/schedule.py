"""Day-partitioned schedule model and its time-relative queries.

Raw time slots (one per table row, each holding every day) are transposed
into one DaySchedule per day. Every query returns a new Schedule built from
deep copies, so callers can never alias the originating data.
"""

import re
from collections.abc import Sequence
from datetime import date, datetime, time

from src.timetable.models import DaySchedule, Pair, PairContent, PairKind, RawTimeSlot

TIME_RANGE = re.compile(r"^(\d{1,2}):(\d{2}).+?(\d{1,2}):(\d{2})$")
DATE_PATTERN = re.compile(r"(\d{1,2})\.(\d{1,2})(?:\.(\d{2,4}))?")

# A pair counts as current from 10 minutes before its nominal start
LEAD_IN_MINUTES = 10

FIRST_PAIR_START = time(8, 0)
BIG_BREAK_START = time(13, 5)
BIG_BREAK_END = time(13, 45)

# Days made entirely of one of these collapse to a single line in format()
WHOLE_DAY_KINDS = (PairKind.EVENT, PairKind.IGA, PairKind.PRACTICE, PairKind.VACATION)


def _minutes(at: time | datetime) -> float:
    return at.hour * 60 + at.minute + at.second / 60


def pair_window(time_range: str) -> tuple[int, int] | None:
    """Return the ``[start - 10 min, end]`` window in minutes of the day.

    None when the range is not in ``H:MM .. H:MM`` form.
    """
    match = TIME_RANGE.match(time_range.strip())
    if match is None:
        return None
    start_h, start_m, end_h, end_m = (int(group) for group in match.groups())
    return start_h * 60 + start_m - LEAD_IN_MINUTES, end_h * 60 + end_m


def shorten_teacher_name(name: str | None) -> str:
    """Shorten "Иванов Иван Иванович" to "Иванов И.И."; other shapes pass through."""
    if not name:
        return ""
    parts = name.split()
    if len(parts) == 3:
        return f"{parts[0]} {parts[1][0]}.{parts[2][0]}."
    return name


class Schedule:
    """Ordered sequence of DaySchedule in the source table's column order."""

    def __init__(self, days: Sequence[DaySchedule]) -> None:
        self._days = list(days)

    @classmethod
    def from_raw(cls, slots: list[RawTimeSlot] | None) -> "Schedule":
        """Transpose time-slot rows into day schedules.

        Raises:
            ValueError: If ``slots`` is None or empty.
        """
        if slots is None:
            raise ValueError("schedule is None")
        if not slots:
            raise ValueError("schedule is empty")

        days = [
            DaySchedule(date=entry.date, weekday=entry.weekday, week_type=entry.week_type)
            for entry in slots[0].days
        ]
        for slot in slots:
            for index, entry in enumerate(slot.days):
                days[index].pairs.append(
                    Pair(
                        pair_number=slot.pair_number,
                        time_range=slot.time_range,
                        kind=entry.kind,
                        title=entry.title,
                        replaced=entry.replaced,
                        content=entry.content.model_copy(deep=True)
                        if isinstance(entry.content, PairContent)
                        else entry.content,
                    )
                )
        return cls(days)

    @property
    def days(self) -> list[DaySchedule]:
        """Deep copy of every day."""
        return [day.model_copy(deep=True) for day in self._days]

    def __len__(self) -> int:
        return len(self._days)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Schedule):
            return NotImplemented
        return self._days == other._days

    def __repr__(self) -> str:
        return f"Schedule(days={len(self._days)})"

    def deep_clone(self) -> "Schedule":
        return Schedule(self.days)

    def day(self, index: int = 0) -> "Schedule":
        return Schedule([self._days[index].model_copy(deep=True)])

    def select_days(self, *indexes: int) -> "Schedule":
        return Schedule([self._days[i].model_copy(deep=True) for i in indexes])

    def day_for(self, target: date) -> "Schedule | None":
        """Single-day schedule whose header date is ``target``.

        Falls back to the first day when no header carries a parseable date.
        """
        parsed_any = False
        for index, day in enumerate(self._days):
            match = DATE_PATTERN.search(day.date or "")
            if match is None:
                continue
            parsed_any = True
            if int(match.group(1)) == target.day and int(match.group(2)) == target.month:
                return self.day(index)
        if not parsed_any and self._days:
            return self.day(0)
        return None

    def pair(self, index: int, day_index: int = 0) -> "Schedule":
        day = self._days[day_index].model_copy(deep=True)
        day.pairs = [day.pairs[index]]
        return Schedule([day])

    def first_pair(self) -> Pair | None:
        if not self._days or not self._days[0].pairs:
            return None
        return self._days[0].pairs[0].model_copy(deep=True)

    def _current_index(self, at: time | datetime) -> int | None:
        if not self._days:
            return None
        minute = _minutes(at)
        for index, pair in enumerate(self._days[0].pairs):
            window = pair_window(pair.time_range)
            if window is not None and window[0] <= minute <= window[1]:
                return index
        return None

    def now(self, at: time | datetime) -> "Schedule | None":
        """The pair of the first day whose window contains ``at``, if any."""
        index = self._current_index(at)
        if index is None:
            return None
        return self.pair(index)

    def left(self, from_: time | datetime) -> "Schedule | None":
        """Pairs of the first day still ahead of ``from_``.

        The current pair is included. Before 8:00 and during the 13:05-13:45
        break the whole day is returned; otherwise None when nothing is on.
        """
        index = self._current_index(from_)
        if index is not None:
            today = self.day()
            today._days[0].pairs = today._days[0].pairs[index:]
            return today

        moment = _minutes(from_)
        if moment <= _minutes(FIRST_PAIR_START):
            return self.day()
        if _minutes(BIG_BREAK_START) <= moment <= _minutes(BIG_BREAK_END):
            return self.day()
        return None

    def all_empty(self) -> bool:
        return all(pair.kind == PairKind.EMPTY for day in self._days for pair in day.pairs)

    def format(self) -> str:
        """Markdown summary of every day, one block per day."""
        if all(not day.pairs for day in self._days):
            return ""

        blocks: list[str] = []
        for day in self._days:
            heading = f"📅 {day.weekday}, {day.date}"
            if day.pairs and any(
                all(pair.kind == kind for pair in day.pairs) for kind in WHOLE_DAY_KINDS
            ):
                blocks.append(f"{heading}: *{day.pairs[0].content}*")
                continue

            pairs = (_format_pair(pair) for pair in day.pairs)
            body = "\n\n".join(text for text in pairs if text)
            blocks.append(f"{heading}:\n\n{body}")
        return "\n\n".join(blocks)


def _format_pair(pair: Pair) -> str | None:
    if pair.kind == PairKind.EMPTY:
        return None

    header = f"{pair.pair_number} | {pair.time_range}"
    content = pair.content if isinstance(pair.content, PairContent) else PairContent()
    # teacher timetables name the attending group instead of the teacher
    teacher = content.group or shorten_teacher_name(content.teacher)

    if pair.kind == PairKind.SUBJECT:
        return f"{header} | {content.classroom}\n*{content.discipline}*\n{teacher}"
    if pair.kind in (PairKind.EXAM, PairKind.CONSULTATION):
        return (
            f"{header} | {content.classroom}\n_{pair.title}_\n"
            f"*{content.discipline}*\n{teacher}"
        )
    # event, iga, practice, session, vacation carry plain text
    return f"{header} — *{pair.content}*"
