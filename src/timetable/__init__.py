"""College timetable scraper with cached schedules and notifications.

Scrapes group schedules from coworking.tyuiu.ru through a single Playwright
session, caches them, and sends pre-lesson reminders and a daily digest.
"""

from src.timetable.app import TimetableService
from src.timetable.cache import Cache
from src.timetable.fetcher import ScheduleFetcher
from src.timetable.models import GroupIdentity, Recipient
from src.timetable.schedule import Schedule

__all__ = [
    "TimetableService",
    "Cache",
    "ScheduleFetcher",
    "Schedule",
    "GroupIdentity",
    "Recipient",
]
