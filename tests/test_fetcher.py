import asyncio
import random
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from playwright.async_api import Error as PlaywrightError

from src.timetable.cache import Cache
from src.timetable.directory import JsonRecipientDirectory
from src.timetable.errors import StaleIdentityError, TransientFetchError
from src.timetable.fetcher import ScheduleFetcher
from src.timetable.models import GroupIdentity, Recipient
from src.timetable.pages.groups import TeachersPage
from tests.fakes import SCHEDULE_HTML, FakeReporter, FakeSession

DEPARTMENT = "Отделение информационных технологий"
GROUP = "ИСП-23-1"


def _make_fetcher(config, respond, directory=None, sleep=asyncio.sleep):
    session = FakeSession(respond)
    reporter = FakeReporter()
    directory = directory or JsonRecipientDirectory(config.recipients_path)
    fetcher = ScheduleFetcher(
        session,
        Cache(config.cache_path),
        directory,
        reporter,
        config,
        rng=random.Random(1),
        sleep=sleep,
    )
    return fetcher, session, reporter


def _serve_listings(monkeypatch, fetcher, groups):
    calls = []

    async def fake_departments(*, force=False):
        calls.append(("departments", force))
        return {DEPARTMENT: "https://mnokol.tyuiu.ru/site/it"}

    async def fake_groups(url, name, *, force=False):
        calls.append(("groups", force))
        return groups

    monkeypatch.setattr(fetcher, "fetch_departments", fake_departments)
    monkeypatch.setattr(fetcher, "fetch_groups", fake_groups)
    return calls


def test_schedule_fetched_once_then_cached(config, identity):
    fetcher, session, reporter = _make_fetcher(config, lambda url: SCHEDULE_HTML)

    async def scenario():
        first = await fetcher.fetch_schedule(identity)
        second = await fetcher.fetch_schedule(identity)
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    assert [slot.pair_number for slot in first] == ["1", "2", "3"]
    assert len(session.visited) == 1
    assert "sid=28703&gr=427" in session.visited[0]
    assert reporter.reports == []
    assert Path(config.debug_html_dump_path).read_text(encoding="utf-8") == SCHEDULE_HTML


def test_stale_ids_repaired_once(monkeypatch, config):
    stale = GroupIdentity(
        department_id="1", group_id="1", department_name=DEPARTMENT, group_name=GROUP
    )
    directory = JsonRecipientDirectory(
        config.recipients_path,
        [Recipient(id=10, identity=stale), Recipient(id=11, identity=stale)],
    )
    patches = []
    original_patch = directory.patch_identity

    def recording_patch(old, new):
        patches.append((old, new))
        return original_patch(old, new)

    monkeypatch.setattr(directory, "patch_identity", recording_patch)

    def respond(url):
        return SCHEDULE_HTML if "gr=427" in url else None

    fetcher, session, reporter = _make_fetcher(config, respond, directory)
    calls = _serve_listings(
        monkeypatch, fetcher, {GROUP: {"group_id": "427", "department_id": "28703"}}
    )

    slots = asyncio.run(fetcher.fetch_schedule(stale))

    assert slots is not None
    assert len(patches) == 1
    assert patches[0][1].group_id == "427"
    assert ("departments", True) in calls
    assert sum("gr=1&" in url for url in session.visited) == config.max_retries
    assert sum("gr=427" in url for url in session.visited) == 1
    assert all(r.identity.group_id == "427" for r in directory.all_recipients())
    assert fetcher.cache.get("schedule_28703_427") is not None
    assert reporter.reports == []


def test_failure_after_repair_reports_and_returns_none(monkeypatch, config, identity):
    fetcher, session, reporter = _make_fetcher(config, lambda url: None)
    _serve_listings(
        monkeypatch, fetcher, {GROUP: {"group_id": "427", "department_id": "28703"}}
    )

    assert asyncio.run(fetcher.fetch_schedule(identity)) is None

    # ids unchanged: phase two reuses them
    assert len(session.visited) == 2 * config.max_retries
    assert len(reporter.reports) == 1
    text, attachments = reporter.reports[0]
    assert GROUP in text
    assert attachments == [Path(config.debug_html_dump_path)]
    assert fetcher.cache.get(identity.cache_key) is None


def test_parse_error_is_not_retried(monkeypatch, config, identity):
    fetcher, session, reporter = _make_fetcher(config, lambda url: "<html>no table</html>")
    calls = _serve_listings(monkeypatch, fetcher, {})

    assert asyncio.run(fetcher.fetch_schedule(identity)) is None
    assert len(session.visited) == 1
    assert calls == []
    assert "Schedule table missing" in reporter.reports[0][0]


def test_resolve_identity(monkeypatch, config):
    fetcher, _, _ = _make_fetcher(config, lambda url: None)
    _serve_listings(monkeypatch, fetcher, {GROUP: {"group_id": "427", "department_id": "28703"}})

    resolved = asyncio.run(fetcher.resolve_identity(DEPARTMENT, GROUP))
    assert resolved.cache_key == "schedule_28703_427"
    assert not resolved.is_correspondence

    with pytest.raises(StaleIdentityError):
        asyncio.run(fetcher.resolve_identity(DEPARTMENT, "ИСП-99-9"))
    with pytest.raises(StaleIdentityError):
        asyncio.run(fetcher.resolve_identity("Несуществующее отделение", GROUP))


def test_departments_downloaded_with_retries(monkeypatch, config):
    fetcher, _, _ = _make_fetcher(config, lambda url: None)
    attempts = []
    html = (
        '<ul class="mod-menu"><li class="col-lg col-md-6">'
        '<a href="/site/it">Отделение информационных технологий</a></li></ul>'
    )

    def download(url):
        attempts.append(url)
        if len(attempts) == 1:
            raise TransientFetchError("connection reset")
        return html

    monkeypatch.setattr(fetcher, "_download", download)

    async def scenario():
        first = await fetcher.fetch_departments()
        second = await fetcher.fetch_departments()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second == {DEPARTMENT: "https://mnokol.tyuiu.ru/site/it"}
    assert len(attempts) == 2


def test_fetch_groups_requires_url(config):
    fetcher, _, _ = _make_fetcher(config, lambda url: None)
    with pytest.raises(ValueError):
        asyncio.run(fetcher.fetch_groups("", DEPARTMENT))


def test_schedule_url_for_correspondence(identity):
    correspondence = identity.model_copy(update={"is_correspondence": True})
    assert "/shz.php?" in ScheduleFetcher.schedule_url(correspondence, 2025)
    assert ScheduleFetcher.schedule_url(identity, 2025) == (
        "https://coworking.tyuiu.ru/shs/all_t/sh.php?action=group&union=0"
        "&sid=28703&gr=427&year=2025&vr=1"
    )


def test_fetch_all_groups_cached_per_department(monkeypatch, config):
    fetcher, _, _ = _make_fetcher(config, lambda url: None)
    requested = []

    async def fake_departments(*, force=False):
        return {DEPARTMENT: "https://mnokol.tyuiu.ru/site/it", "Заочное обучение": "https://mnokol.tyuiu.ru/site/zo"}

    async def fake_groups(url, name, *, force=False):
        requested.append(name)
        return {f"{name[:3]}-1": {"group_id": "1", "department_id": "2"}}

    monkeypatch.setattr(fetcher, "fetch_departments", fake_departments)
    monkeypatch.setattr(fetcher, "fetch_groups", fake_groups)

    async def scenario():
        first = await fetcher.fetch_all_groups()
        second = await fetcher.fetch_all_groups()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert set(first) == {DEPARTMENT, "Заочное обучение"}
    assert requested == [DEPARTMENT, "Заочное обучение"]


def _recording_sleep():
    waits = []

    async def sleep(seconds):
        waits.append(seconds)

    return waits, sleep


def test_retry_recovers_after_transient_failure(config):
    waits, sleep = _recording_sleep()
    config = config.model_copy(update={"retry_initial_delay": 1})
    fetcher, _, _ = _make_fetcher(config, lambda url: None, sleep=sleep)
    attempts = []

    async def operation():
        attempts.append(len(attempts) + 1)
        if len(attempts) == 1:
            raise TransientFetchError("navigation timed out")
        return "<html>ok</html>"

    assert asyncio.run(fetcher._with_retries(operation)) == "<html>ok</html>"
    assert attempts == [1, 2]
    assert waits == [1]


def test_retry_gives_up_after_three_attempts_with_doubling_delay(config):
    waits, sleep = _recording_sleep()
    config = config.model_copy(update={"retry_initial_delay": 1})
    fetcher, _, _ = _make_fetcher(config, lambda url: None, sleep=sleep)
    attempts = []

    async def operation():
        attempts.append(len(attempts) + 1)
        raise TransientFetchError(f"attempt {len(attempts)} timed out")

    with pytest.raises(TransientFetchError, match="attempt 3"):
        asyncio.run(fetcher._with_retries(operation))
    assert attempts == [1, 2, 3]
    assert waits == [1, 2]


def test_both_schedule_phases_back_off(monkeypatch, config, identity):
    waits, sleep = _recording_sleep()
    config = config.model_copy(update={"retry_initial_delay": 1})
    fetcher, session, _ = _make_fetcher(config, lambda url: None, sleep=sleep)
    _serve_listings(
        monkeypatch, fetcher, {GROUP: {"group_id": "427", "department_id": "28703"}}
    )

    assert asyncio.run(fetcher.fetch_schedule(identity)) is None
    assert len(session.visited) == 6
    assert waits == [1, 2, 1, 2]


def test_navigation_error_is_retried_then_reported(monkeypatch, config, identity):
    def respond(url):
        return PlaywrightError(f"net::ERR_CONNECTION_RESET at {url}")

    fetcher, session, reporter = _make_fetcher(config, respond)
    calls = _serve_listings(
        monkeypatch, fetcher, {GROUP: {"group_id": "427", "department_id": "28703"}}
    )

    assert asyncio.run(fetcher.fetch_schedule(identity)) is None

    # both phases retried, with identity repair in between
    assert len(session.visited) == 2 * config.max_retries
    assert ("departments", True) in calls
    assert "ERR_CONNECTION_RESET" in reporter.reports[0][0]


def test_schedule_over_plain_http(monkeypatch, config, identity):
    config = config.model_copy(update={"fetch_schedule_with_browser": False})
    fetcher, session, reporter = _make_fetcher(config, lambda url: None)
    requested = []

    def fake_get(url, headers=None, timeout=None):
        requested.append(url)
        return SimpleNamespace(
            content=SCHEDULE_HTML.encode("windows-1251"),
            raise_for_status=lambda: None,
        )

    monkeypatch.setattr(requests, "get", fake_get)

    slots = asyncio.run(fetcher.fetch_schedule(identity))

    assert slots[0].days[0].content.discipline == "Алгебра"
    assert session.visited == []
    assert "sid=28703&gr=427" in requested[0]
    assert reporter.reports == []


def test_plain_http_failure_is_transient(monkeypatch, config):
    fetcher, _, _ = _make_fetcher(config, lambda url: None)

    def fake_get(url, headers=None, timeout=None):
        raise requests.ConnectionError("connection reset")

    monkeypatch.setattr(requests, "get", fake_get)

    with pytest.raises(TransientFetchError, match="connection reset"):
        fetcher._download("https://coworking.tyuiu.ru/shs/all_t/sh.php", "windows-1251")


TEACHER_SCHEDULE_HTML = """
<table id="main_table">
  <tr><td>№</td><td>Время</td><td>20.10.2025<br>Понедельник<br>Числитель</td></tr>
  <tr class="para_num">
    <td>1</td>
    <td>8:00 - 9:35</td>
    <td class="urok">
      <div class="disc">Алгебра<div>ИСП-23-1</div></div>
      <div class="cab">204</div>
    </td>
  </tr>
</table>
"""


def test_teacher_schedule_spans_every_department(monkeypatch, config):
    fetcher, session, reporter = _make_fetcher(config, lambda url: TEACHER_SCHEDULE_HTML)

    async def fake_all_groups(*, force=False):
        return {
            DEPARTMENT: {GROUP: {"group_id": "427", "department_id": "28703"}},
            "Заочное обучение": {"ЗО-23-1": {"group_id": "9", "department_id": "28710"}},
            "Пустое отделение": {},
        }

    monkeypatch.setattr(fetcher, "fetch_all_groups", fake_all_groups)

    async def scenario():
        first = await fetcher.fetch_teacher_schedule("77", "Иванов Иван Иванович")
        second = await fetcher.fetch_teacher_schedule("77", "Иванов Иван Иванович")
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    content = first[0].days[0].content
    assert (content.discipline, content.group) == ("Алгебра", "ИСП-23-1")
    assert len(session.visited) == 1
    assert "action=prep&prep=77" in session.visited[0]
    assert "&count=2&shed[0]=28703" in session.visited[0]
    assert "&shed[1]=28710&union[1]=0" in session.visited[0]
    assert reporter.reports == []


def test_teacher_schedule_failure_returns_none(monkeypatch, config):
    fetcher, _, reporter = _make_fetcher(config, lambda url: "<html>no table</html>")

    async def fake_all_groups(*, force=False):
        return {DEPARTMENT: {GROUP: {"group_id": "427", "department_id": "28703"}}}

    monkeypatch.setattr(fetcher, "fetch_all_groups", fake_all_groups)

    assert asyncio.run(fetcher.fetch_teacher_schedule("77", "Иванов Иван Иванович")) is None
    assert "Иванов Иван Иванович" in reporter.reports[0][0]


def test_teacher_schedule_url():
    assert ScheduleFetcher.teacher_schedule_url("77", ["1", "2"], 2025) == (
        "https://coworking.tyuiu.ru/shs/all_t/sh.php?action=prep&prep=77&vr=1&count=2"
        "&shed[0]=1&union[0]=0&year[0]=2025&shed[1]=2&union[1]=0&year[1]=2025"
    )


def test_teachers_listed_and_cached(monkeypatch, config):
    fetcher, session, _ = _make_fetcher(config, lambda url: None)
    visits = []

    async def extract(self, url, *, timeout):
        visits.append(url)
        return [
            {"text": "Выберите преподавателя", "value": "0"},
            {"text": "Иванов Иван Иванович", "value": "77"},
        ]

    monkeypatch.setattr(TeachersPage, "extract", extract)

    async def scenario():
        first = await fetcher.fetch_teachers()
        second = await fetcher.fetch_teachers()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second == {"Иванов Иван Иванович": "77"}
    assert len(visits) == 1
    assert "id=1247" in visits[0]
