"""structlog setup shared by the service and the CLI.

JSON lines in production (``LOG_JSON=true``), coloured console output during
development. Modules log through ``get_logger(__name__)`` with event-style
keys; stdlib loggers of the libraries underneath (Playwright, APScheduler,
urllib3) write plain lines to the same stream.
"""

import logging
import sys

import structlog

# Third-party loggers that only matter when something is wrong
QUIET_LOGGERS = ("apscheduler", "urllib3", "asyncio")


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_output: Render JSON lines instead of console output.
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL; unknown names fall back to INFO.
    """
    level = _level(log_level)

    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors += [
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger whose events carry ``module=name``."""
    return structlog.get_logger(module=name)
