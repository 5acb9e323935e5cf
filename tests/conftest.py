import pytest

from src.timetable.config import TimetableConfig
from src.timetable.models import GroupIdentity


@pytest.fixture
def config(tmp_path):
    return TimetableConfig(
        _env_file=None,
        cache_path=str(tmp_path / "cache.sqlite3"),
        retry_initial_delay=0,
        settle_delay_min=0,
        settle_delay_max=0,
        debug_html_dump_path=str(tmp_path / "debug" / "schedule.html"),
        recipients_path=str(tmp_path / "recipients.json"),
    )


@pytest.fixture
def identity():
    return GroupIdentity(
        department_id="28703",
        group_id="427",
        department_name="Отделение информационных технологий",
        group_name="ИСП-23-1",
    )
