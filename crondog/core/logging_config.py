"""Logging for the crondog supervisor.

The restart jobs that ``crond`` runs write lines of the form
``DD-MM-YYYY HH:MM:SS [cron-restart] LEVEL: message`` to the container's
stdout.  Supervisor records use the same timestamp layout and a
``[watchdog]`` tag, so ``docker logs`` reads as one stream::

    19-10-2026 02:00:01 [watchdog] INFO    [a3f2b1c0] crondog.schedule.synchronizer: \
Container configuration changed, crontab updated (found 2 container(s)). (SCHEDULE_CHANGED)

The level and format come from :class:`~crondog.core.settings.Settings`
(``LOG_LEVEL`` / ``LOG_FORMAT``).  ``__main__`` installs a bootstrap
configuration first, so a settings failure can still be logged, then applies
the loaded values with :func:`configure_from_settings`.

Every other module defines its own logger at module scope::

    logger = logging.getLogger(__name__)
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    from crondog.core.settings import Settings

__all__ = [
    "CYCLE_ID_CTX",
    "CycleContextFilter",
    "JsonFormatter",
    "WatchdogFormatter",
    "configure_from_settings",
    "configure_logging",
]

#: Current discovery-cycle id (``uuid4().hex[:8]``), ``"-"`` outside a cycle.
#: Copied into worker threads started through ``asyncio.to_thread``.
CYCLE_ID_CTX: ContextVar[str] = ContextVar("cycle_id", default="-")

LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FORMATS: tuple[str, ...] = ("text", "json")

#: Same layout as the date stamp in the rendered crontab jobs.
DATE_FORMAT = "%d-%m-%Y %H:%M:%S"
_TEXT_FORMAT = "%(asctime)s [watchdog] %(levelname)-7s [%(cycle_id)s] %(name)s: %(message)s"

# The docker SDK logs every HTTP round-trip through urllib3.
_NOISY_LOGGERS = ("urllib3", "docker", "asyncio")


class CycleContextFilter(logging.Filter):
    """Stamp ``record.cycle_id`` from :data:`CYCLE_ID_CTX`."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.cycle_id = CYCLE_ID_CTX.get()
        return True


class WatchdogFormatter(logging.Formatter):
    """Text lines matching the restart jobs' output, with the event appended."""

    def __init__(self) -> None:
        super().__init__(fmt=_TEXT_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        line = super().format(record)
        event = getattr(record, "event", None)
        if not event:
            return line
        # Keep tracebacks below the message line.
        head, sep, tail = line.partition("\n")
        return f"{head} ({event}){sep}{tail}"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    ``ts``, ``level``, ``logger``, ``message`` and ``cycle_id`` are always
    present; ``event``, ``extra`` (any other ``extra=`` keys) and
    ``exc_info`` only when set.
    """

    _RESERVED: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {
        "message",
        "asctime",
        "taskName",
        "cycle_id",
        "event",
    }

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "cycle_id": getattr(record, "cycle_id", CYCLE_ID_CTX.get()),
        }

        event = getattr(record, "event", None)
        if event:
            payload["event"] = event

        extra = {k: v for k, v in vars(record).items() if k not in self._RESERVED}
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text

        return json.dumps(payload, default=str)


def _resolve(level: str, fmt: str) -> tuple[str, str]:
    resolved_level = level.upper()
    resolved_fmt = fmt.lower()
    if resolved_level not in LEVELS:
        raise ValueError(f"Unknown LOG_LEVEL {level!r}. Must be one of: {', '.join(LEVELS)}")
    if resolved_fmt not in FORMATS:
        raise ValueError(f"Unknown LOG_FORMAT {fmt!r}. Must be one of: {', '.join(FORMATS)}")
    return resolved_level, resolved_fmt


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    *,
    force: bool = False,
    stream: IO[str] | None = None,
) -> None:
    """Install one stderr handler on the root logger.

    Without *force*, an already configured root logger only has its level
    changed.

    Raises:
        ValueError: *level* or *fmt* is not recognised.
    """
    resolved_level, resolved_fmt = _resolve(level, fmt)
    root = logging.getLogger()

    if root.handlers and not force:
        root.setLevel(resolved_level)
        return

    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(CycleContextFilter())
    handler.setFormatter(JsonFormatter() if resolved_fmt == "json" else WatchdogFormatter())
    root.addHandler(handler)
    root.setLevel(resolved_level)

    quiet = logging.WARNING if resolved_level != "DEBUG" else logging.NOTSET
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def configure_from_settings(
    settings: Settings,
    *,
    level: str | None = None,
    fmt: str | None = None,
) -> None:
    """Re-apply logging from *settings*; explicit *level*/*fmt* win (CLI flags)."""
    configure_logging(
        level=level or settings.log_level,
        fmt=fmt or settings.log_format,
        force=True,
    )
