import asyncio
from datetime import datetime, timezone

from src.timetable.directory import MAX_DAILY_REPORTS, JsonRecipientDirectory
from src.timetable.models import DailySendingReport, GroupIdentity, Recipient


def _group(group_id="427"):
    return GroupIdentity(
        department_id="28703",
        group_id=group_id,
        department_name="Отделение информационных технологий",
        group_name="ИСП-23-1",
    )


def _report(ok=True):
    return DailySendingReport(
        configured_time="09:00",
        process_time=0.5,
        ok=ok,
        timestamp=datetime(2025, 10, 20, 9, 0, tzinfo=timezone.utc),
    )


def test_save_and_load(tmp_path):
    path = tmp_path / "data" / "recipients.json"
    directory = JsonRecipientDirectory(path)
    directory.upsert(
        Recipient(id=1, username="student", identity=_group(), daily_send_time="09:00")
    )
    directory.push_daily_report(1, _report())
    directory.save()

    loaded = JsonRecipientDirectory.load(path)
    recipient = loaded.get(1)
    assert recipient.identity == _group()
    assert recipient.daily_reports == [_report()]
    assert not (tmp_path / "data" / "recipients.json.tmp").exists()


def test_missing_or_corrupt_file_gives_empty_directory(tmp_path):
    assert len(JsonRecipientDirectory.load(tmp_path / "absent.json")) == 0

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json", encoding="utf-8")
    assert len(JsonRecipientDirectory.load(corrupt)) == 0


def test_patch_identity_moves_every_matching_recipient(tmp_path):
    stale, other = _group("1"), _group("900")
    directory = JsonRecipientDirectory(
        tmp_path / "recipients.json",
        [
            Recipient(id=1, identity=stale),
            Recipient(id=2, identity=stale),
            Recipient(id=3, identity=other),
            Recipient(id=4),
        ],
    )

    assert directory.patch_identity(stale, _group("427")) == 2
    assert [r.identity.group_id if r.identity else None for r in directory.all_recipients()] == [
        "427",
        "427",
        "900",
        None,
    ]


def test_daily_reports_are_capped(tmp_path):
    directory = JsonRecipientDirectory(tmp_path / "recipients.json", [Recipient(id=1)])
    for index in range(MAX_DAILY_REPORTS + 5):
        directory.push_daily_report(1, _report(ok=index % 2 == 0))
    directory.push_daily_report(99, _report())

    assert len(directory.get(1).daily_reports) == MAX_DAILY_REPORTS


def test_reads_are_copies(tmp_path):
    directory = JsonRecipientDirectory(tmp_path / "recipients.json", [Recipient(id=1)])
    directory.get(1).pair_notifications = True
    directory.all_recipients()[0].username = "changed"

    recipient = directory.get(1)
    assert not recipient.pair_notifications
    assert recipient.username is None
    assert directory.remove(1)
    assert directory.get(1) is None


def test_save_loop_writes_until_stopped(tmp_path):
    path = tmp_path / "recipients.json"
    directory = JsonRecipientDirectory(path, [Recipient(id=7)])

    async def scenario():
        stop = asyncio.Event()
        loop_task = asyncio.create_task(directory.save_loop(stop, interval=60))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(loop_task, timeout=1)

    asyncio.run(scenario())
    assert JsonRecipientDirectory.load(path).get(7) is not None
