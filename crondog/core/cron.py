"""Cron expression helpers shared by the runtime adapter and the compiler.

Crondog only ever emits classic 5-field expressions (minute, hour,
day-of-month, month, day-of-week) because that is what ``crond`` reads from
its crontab.  Anything else is treated as a malformed label and replaced by
the configured default schedule.
"""

from __future__ import annotations

import logging
import re
from typing import Final

from croniter import croniter

__all__ = [
    "CRON_FIELD_COUNT",
    "KEEP_ALIVE_SCHEDULE",
    "escape_for_shell",
    "validate_cron_expression",
]

logger = logging.getLogger(__name__)

#: Number of whitespace-separated fields in a standard crontab schedule.
CRON_FIELD_COUNT: Final[int] = 5

#: Schedule of the placeholder job installed when no container is eligible.
KEEP_ALIVE_SCHEDULE: Final[str] = "*/30 * * * *"

# [ \ . * ^ $ ( ) + ? { |
_ESCAPE_RE: Final[re.Pattern[str]] = re.compile(r"([\[\\.*^$()+?{|])")


def validate_cron_expression(expression: str | None) -> bool:
    """Return ``True`` if *expression* is a usable 5-field cron schedule.

    Six-field (seconds or years) variants accepted by some schedulers are
    rejected, e.g. ``"0 2 * * * *"``.
    """
    if expression is None or not expression.strip():
        return False

    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        logger.debug(
            "Cron schedule %r has %d fields, expected %d.",
            expression,
            len(fields),
            CRON_FIELD_COUNT,
        )
        return False

    if not croniter.is_valid(" ".join(fields)):
        logger.debug("Cron schedule %r rejected by croniter.", expression)
        return False

    return True


def escape_for_shell(value: str) -> str:
    """Backslash-escape regex meta-characters in a container name.

    This is *not* full shell quoting: backticks, ``;``, ``&`` and quotes pass
    through unchanged.  Container names come from the runtime's own naming
    rules (``[a-zA-Z0-9][a-zA-Z0-9_.-]``), so in practice only ``.`` is ever
    rewritten.
    """
    return _ESCAPE_RE.sub(r"\\\1", value)
