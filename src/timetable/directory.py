"""Recipient directory: who gets notified and for which group.

RecipientDirectory is the interface the notifiers and fetcher depend on.
JsonRecipientDirectory keeps recipients in memory and backs them up to a JSON
file, written to a temporary file first and renamed into place.
"""

import asyncio
import os
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from src.timetable.logging import get_logger
from src.timetable.models import DailySendingReport, GroupIdentity, Recipient

log = get_logger(__name__)

# Daily sending reports kept per recipient
MAX_DAILY_REPORTS = 30

_recipients_adapter = TypeAdapter(list[Recipient])


class RecipientDirectory(Protocol):
    def all_recipients(self) -> Iterable[Recipient]: ...

    def patch_identity(self, old: GroupIdentity, new: GroupIdentity) -> int: ...

    def push_daily_report(self, recipient_id: int, report: DailySendingReport) -> None: ...


class JsonRecipientDirectory:
    """In-memory recipient store with JSON file backup."""

    def __init__(self, path: str | Path, recipients: Iterable[Recipient] = ()) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._recipients: dict[int, Recipient] = {r.id: r for r in recipients}

    @classmethod
    def load(cls, path: str | Path) -> "JsonRecipientDirectory":
        """Load recipients from ``path``; a missing or corrupt file yields an empty directory."""
        path = Path(path)
        try:
            recipients = _recipients_adapter.validate_json(path.read_bytes())
        except FileNotFoundError:
            log.info("recipients_file_missing", path=str(path))
            recipients = []
        except ValidationError as e:
            log.error("recipients_load_failed", path=str(path), error=str(e))
            recipients = []
        log.info("recipients_loaded", count=len(recipients), path=str(path))
        return cls(path, recipients)

    def __len__(self) -> int:
        return len(self._recipients)

    def get(self, recipient_id: int) -> Recipient | None:
        with self._lock:
            recipient = self._recipients.get(recipient_id)
            return recipient.model_copy(deep=True) if recipient else None

    def upsert(self, recipient: Recipient) -> None:
        with self._lock:
            self._recipients[recipient.id] = recipient.model_copy(deep=True)

    def remove(self, recipient_id: int) -> bool:
        with self._lock:
            return self._recipients.pop(recipient_id, None) is not None

    def all_recipients(self) -> list[Recipient]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._recipients.values()]

    def patch_identity(self, old: GroupIdentity, new: GroupIdentity) -> int:
        """Point every recipient of ``old``'s ids at ``new``. Returns the number patched."""
        patched = 0
        with self._lock:
            for recipient in self._recipients.values():
                identity = recipient.identity
                if identity is None:
                    continue
                if (identity.department_id, identity.group_id) == (old.department_id, old.group_id):
                    recipient.identity = new
                    patched += 1
        log.info(
            "recipients_identity_patched",
            group=new.group_name,
            old=old.cache_key,
            new=new.cache_key,
            count=patched,
        )
        return patched

    def push_daily_report(self, recipient_id: int, report: DailySendingReport) -> None:
        with self._lock:
            recipient = self._recipients.get(recipient_id)
            if recipient is None:
                return
            recipient.daily_reports.append(report)
            del recipient.daily_reports[:-MAX_DAILY_REPORTS]

    def save(self) -> None:
        """Write every recipient to the JSON file atomically."""
        with self._lock:
            payload = _recipients_adapter.dump_json(list(self._recipients.values()), indent=2)
            count = len(self._recipients)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        temp_path.write_bytes(payload)
        os.replace(temp_path, self.path)
        log.info("recipients_saved", count=count, path=str(self.path))

    async def save_loop(self, stop: asyncio.Event, interval: float) -> None:
        """Back up the directory every ``interval`` seconds until ``stop`` is set."""
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.save)
            except OSError as e:
                log.error("recipients_save_failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
