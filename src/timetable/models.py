"""Pydantic models for timetable data.

All data structures use Pydantic v2 for validation, serialization, and type safety.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PairKind(str, Enum):
    """Classification of one timetable cell."""

    EMPTY = "empty"
    SUBJECT = "subject"
    EVENT = "event"
    EXAM = "exam"
    CONSULTATION = "consultation"
    PRACTICE = "practice"
    IGA = "iga"  # state examination
    SESSION = "session"
    VACATION = "vacation"


# Kinds whose content is a PairContent rather than plain text
TEACHING_KINDS = frozenset({PairKind.SUBJECT, PairKind.EXAM, PairKind.CONSULTATION})


class PairContent(BaseModel):
    """Discipline, teacher and classroom scraped from the .disc/.prep/.cab elements."""

    discipline: str | None = None
    teacher: str | None = None
    classroom: str | None = None
    group: str | None = None  # teacher timetables: the group attending


class RawDayEntry(BaseModel):
    """One cell of the source table: a single day within a time slot."""

    date: str | None = None  # "20.10.2025" from the header cell
    weekday: str | None = None  # "Понедельник"
    week_type: str | None = None  # "Числитель" / "Знаменатель"
    replaced: bool = False  # table.zamena inside the cell
    consultation: bool = False  # table.consultation inside the cell
    kind: PairKind = PairKind.EMPTY
    title: str | None = None  # exam/consultation header, e.g. "Экзамен"
    content: PairContent | str | None = None


class RawTimeSlot(BaseModel):
    """One row of the source table, aligned with the day headers."""

    pair_number: str
    time_range: str  # "8:00 - 9:35"
    days: list[RawDayEntry] = Field(default_factory=list)


class Pair(BaseModel):
    """A single lesson slot of one day."""

    pair_number: str
    time_range: str
    kind: PairKind = PairKind.EMPTY
    title: str | None = None
    content: PairContent | str | None = None
    replaced: bool = False


class DaySchedule(BaseModel):
    date: str | None = None
    weekday: str | None = None
    week_type: str | None = None
    pairs: list[Pair] = Field(default_factory=list)


class GroupIdentity(BaseModel):
    """Key under which a timetable is fetched, cached and fanned out.

    The numeric ids come from the remote source and can go stale; the names
    are the stable keys used to re-resolve them.
    """

    model_config = ConfigDict(frozen=True)

    department_id: str  # "sid" attribute of the group option
    group_id: str  # "value" of the group option ("gr" query parameter)
    department_name: str
    group_name: str
    is_correspondence: bool = False

    @property
    def cache_key(self) -> str:
        return f"schedule_{self.department_id}_{self.group_id}"


class DailySendingReport(BaseModel):
    """Outcome of one daily digest delivery."""

    configured_time: str
    process_time: float
    ok: bool
    timestamp: datetime


class Recipient(BaseModel):
    """A chat that receives notifications."""

    id: int
    username: str | None = None
    identity: GroupIdentity | None = None
    daily_send_time: str | None = None  # "HH:MM" local time
    pair_notifications: bool = False
    daily_reports: list[DailySendingReport] = Field(default_factory=list)
