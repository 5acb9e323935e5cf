"""Error hierarchy for fetch retry classification and delivery isolation.

Transient failures are retried by tenacity, everything else fails the
current operation:

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientFetchError),
        stop=stop_after_attempt(3),
    ):
        with attempt:
            ...
"""


class TimetableError(Exception):
    """Base exception for all timetable errors."""

    pass


class TransientFetchError(TimetableError):
    """Navigation failed or a selector wait timed out; may succeed on retry.

    Carries the HTML observed before the failure so it can be dumped for
    postmortem.
    """

    def __init__(self, message: str, html: str | None = None) -> None:
        super().__init__(message)
        self.html = html


class ParseError(TimetableError):
    """Schedule table structure was not recognized. Never retried."""

    pass


class StaleIdentityError(TimetableError):
    """Department/group identifiers no longer resolve on the remote source."""

    pass


class DeliveryError(TimetableError):
    """Sending a message to a single recipient failed.

    Logged and counted, never aborts the rest of a batch.
    """

    def __init__(self, recipient_id: int | str, message: str) -> None:
        super().__init__(f"Delivery to {recipient_id} failed: {message}")
        self.recipient_id = recipient_id


class ConfigurationError(TimetableError):
    """Missing or invalid configuration, raised at startup only."""

    pass
