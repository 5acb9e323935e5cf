"""Outbound collaborators: chat transport and operational reporting sink.

The chat binding itself lives outside this package; anything with these
methods can be plugged into the notifiers.
"""

from pathlib import Path
from typing import Any, Protocol

from src.timetable.logging import get_logger

log = get_logger(__name__)


class ChatTransport(Protocol):
    async def send_text(self, recipient_id: int, text: str, **options: Any) -> Any: ...

    async def send_image(self, recipient_id: int, image_path: str | Path, **options: Any) -> Any: ...

    async def delete_message(self, recipient_id: int, message_id: int) -> None: ...


class ReportingSink(Protocol):
    def report(self, text: str, attachments: list[str | Path] | None = None) -> None: ...


class LoggingTransport:
    """Dry-run transport: logs every outgoing message instead of sending it."""

    def __init__(self) -> None:
        self._next_message_id = 1

    async def send_text(self, recipient_id: int, text: str, **options: Any) -> int:
        message_id = self._next_message_id
        self._next_message_id += 1
        log.info("dry_run_send_text", recipient=recipient_id, message_id=message_id, text=text)
        return message_id

    async def send_image(self, recipient_id: int, image_path: str | Path, **options: Any) -> int:
        message_id = self._next_message_id
        self._next_message_id += 1
        log.info("dry_run_send_image", recipient=recipient_id, path=str(image_path))
        return message_id

    async def delete_message(self, recipient_id: int, message_id: int) -> None:
        log.info("dry_run_delete_message", recipient=recipient_id, message_id=message_id)


class LogReporter:
    """Reporting sink that writes operational alerts to the log."""

    def report(self, text: str, attachments: list[str | Path] | None = None) -> None:
        log.warning(
            "operational_report",
            text=text,
            attachments=[str(a) for a in attachments or []],
        )
