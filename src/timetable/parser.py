"""HTML parsing for the departments listing and the schedule table.

Pure functions over HTML strings; browser and network access live in the
fetcher and page objects.
"""

from bs4 import BeautifulSoup, NavigableString, Tag

from src.timetable.errors import ParseError
from src.timetable.logging import get_logger
from src.timetable.models import PairContent, PairKind, RawDayEntry, RawTimeSlot

log = get_logger(__name__)

DEPARTMENT_LINKS = "ul.mod-menu li.col-lg.col-md-6 a"
DEPARTMENT_MARKER = "отделение"
CORRESPONDENCE_DEPARTMENT = "заочное обучение"

NO_CLASSES_TEXT = "нет занятий"
CANCELLED_MARKER = "снято"
EXAM_TABLES = "table.zachet, table.difzachet, table.ekzamen"

# CSS class marker -> kind, checked in this order after the empty/cancelled checks
CLASS_MARKERS: tuple[tuple[str, PairKind], ...] = (
    ("head_urok_iga", PairKind.IGA),
    ("event", PairKind.EVENT),
    ("head_urok_praktik", PairKind.PRACTICE),
    ("head_urok_session", PairKind.SESSION),
    ("head_urok_kanik", PairKind.VACATION),
)


def _text(element: Tag | NavigableString | None) -> str | None:
    """Element text with whitespace collapsed, or None for a missing element."""
    if element is None:
        return None
    if isinstance(element, NavigableString):
        return " ".join(str(element).split())
    return " ".join(element.get_text(" ").split())


def parse_departments(html: str, base_url: str) -> dict[str, str]:
    """Extract ``{department name: absolute URL}`` from the departments listing page."""
    soup = BeautifulSoup(html, "html.parser")
    departments: dict[str, str] = {}
    for link in soup.select(DEPARTMENT_LINKS):
        name = _text(link) or ""
        lowered = name.lower()
        if DEPARTMENT_MARKER not in lowered and lowered != CORRESPONDENCE_DEPARTMENT:
            continue
        href = (link.get("href") or "").replace("&amp;", "&")
        departments[name] = f"{base_url}{href}"

    log.debug("departments_parsed", count=len(departments))
    return departments


def parse_group_options(options: list[dict[str, str]]) -> dict[str, dict[str, str]]:
    """Map group name to its ids, skipping the zero-value placeholder option.

    Returns:
        ``{"ИСП-23-1": {"group_id": "427", "department_id": "28703"}, ...}``
    """
    groups: dict[str, dict[str, str]] = {}
    for option in options:
        if option.get("value") == "0":
            continue
        groups[option["text"]] = {
            "group_id": option["value"],
            "department_id": option.get("sid") or "",
        }
    return groups


def parse_teacher_options(options: list[dict[str, str]]) -> dict[str, str]:
    """Map teacher name to teacher id, skipping the placeholder option."""
    return {
        option["text"]: option["value"]
        for option in options
        if option.get("value") not in (None, "", "0")
    }


def parse_schedule_table(html: str, *, teacher: bool = False) -> list[RawTimeSlot] | None:
    """Parse ``table#main_table`` into time slots aligned with its day headers.

    Args:
        html: Schedule page HTML.
        teacher: Teacher timetables list the attending group under the
            discipline; it is split out into ``PairContent.group``.

    Returns:
        One RawTimeSlot per pair row, or None when the table is absent.

    Raises:
        ParseError: If any pair row lacks its number or time-range cell, or
            its day cells do not line up with the day headers.
    """
    table = BeautifulSoup(html, "html.parser").select_one("table#main_table")
    if table is None:
        log.warning("schedule_table_missing")
        return None

    rows = table.find_all("tr")
    if not rows:
        raise ParseError("Schedule table has no rows")

    header_row = rows[0]
    day_headers = [_parse_day_header(cell) for cell in _cells(header_row)[2:]]

    slots: list[RawTimeSlot] = []
    for row in table.select("tr.para_num"):
        if row is header_row or row.find("th") is not None:
            continue
        slots.append(_parse_row(row, day_headers, teacher=teacher))

    log.info("schedule_table_parsed", slots=len(slots), days=len(day_headers))
    return slots


def _cells(row: Tag) -> list[Tag]:
    # Day cells may hold nested tables, so only direct children count
    return row.find_all("td", recursive=False)


def _parse_day_header(cell: Tag) -> dict[str, str | None]:
    parts = [text for text in (_text(child) for child in cell.children) if text]
    return {
        "date": parts[0] if len(parts) > 0 else None,
        "weekday": parts[1] if len(parts) > 1 else None,
        "week_type": parts[2] if len(parts) > 2 else None,
    }


def _colspan(cell: Tag) -> int:
    try:
        return max(int(cell.get("colspan") or 1), 1)
    except ValueError:
        return 1


def _parse_row(
    row: Tag, day_headers: list[dict[str, str | None]], *, teacher: bool = False
) -> RawTimeSlot:
    cells = _cells(row)
    if len(cells) < 1:
        raise ParseError("Failed to find time cell")
    if len(cells) < 2:
        raise ParseError("Failed to parse time range")

    # A cell spanning several days repeats for each of them
    day_cells = [cell for cell in cells[2:] for _ in range(_colspan(cell))]
    pair_number = _text(cells[0]) or ""
    if len(day_cells) != len(day_headers):
        raise ParseError(
            f"Pair {pair_number!r} has {len(day_cells)} day cells, "
            f"expected {len(day_headers)}"
        )

    days = [
        _parse_day_entry(cell, header, teacher=teacher)
        for cell, header in zip(day_cells, day_headers)
    ]
    return RawTimeSlot(
        pair_number=pair_number,
        time_range=_text(cells[1]) or "",
        days=days,
    )


def _parse_day_entry(
    cell: Tag, header: dict[str, str | None], *, teacher: bool = False
) -> RawDayEntry:
    css_class = " ".join(cell.get("class") or [])
    consultation = cell.select_one("table.consultation") is not None
    entry = RawDayEntry(
        **header,
        replaced=cell.select_one("table.zamena") is not None,
        consultation=consultation,
    )

    if _is_no_classes(cell, css_class) or _is_cancelled(cell):
        entry.kind = PairKind.EMPTY
        return entry

    for marker, kind in CLASS_MARKERS:
        if marker in css_class:
            entry.kind = kind
            entry.content = _text(cell)
            return entry

    if cell.select_one(EXAM_TABLES) is not None:
        entry.kind = PairKind.EXAM
        entry.title = _text(cell.select_one(".head_ekz"))
    elif consultation:
        entry.kind = PairKind.CONSULTATION
        entry.title = _text(cell.select_one(".head_ekz"))
    else:
        entry.kind = PairKind.SUBJECT

    discipline = cell.select_one(".disc")
    group = None
    if teacher and discipline is not None:
        discipline_text, group = _split_teacher_discipline(discipline)
    else:
        discipline_text = _text(discipline)

    entry.content = PairContent(
        discipline=discipline_text,
        teacher=_text(cell.select_one(".prep")),
        classroom=_text(cell.select_one(".cab")),
        group=group,
    )
    return entry


def _split_teacher_discipline(element: Tag) -> tuple[str | None, str | None]:
    # <div class="disc">Алгебра<div>ИСП-23-1</div></div>
    parts = [
        text
        for text in (
            _text(child)
            for child in element.children
            if isinstance(child, NavigableString) or (isinstance(child, Tag) and child.name == "div")
        )
        if text
    ]
    return (parts[0] if parts else None, parts[1] if len(parts) > 1 else None)


def _is_no_classes(cell: Tag, css_class: str) -> bool:
    return "head_urok_block" in css_class and (_text(cell) or "").lower() == NO_CLASSES_TEXT


def _is_cancelled(cell: Tag) -> bool:
    if CANCELLED_MARKER in (_text(cell) or "").lower():
        return True
    discipline = cell.select_one(".disc")
    return discipline is not None and not _text(discipline)
