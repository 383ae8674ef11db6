"""Render eligible containers into crontab text.

Each container becomes one job that logs the attempt, restarts the container
with its stop timeout, and logs SUCCESS or FAILED from the restart command's
exit status.  All output goes to the supervising process's own stdout/stderr
(``/proc/1/fd/1`` and ``/proc/1/fd/2`` by default), so it shows up in
``docker logs`` next to Crondog's own lines.

Containers are sorted by ``(name, id)`` before rendering.  The runtime lists
containers in no guaranteed order, and the fingerprint must only change when
the *set* of containers or their schedules changes.

Rendered entry for ``web`` restarting at 02:00::

    # Restart job for container: web (c1)
    0 2 * * * /bin/sh -c "echo \\$(date '+%d-%m-%Y %H:%M:%S') [cron-restart] INFO: ..."
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Final

from crondog.core import events
from crondog.core.cron import KEEP_ALIVE_SCHEDULE, escape_for_shell, validate_cron_expression
from crondog.core.models import CompiledSchedule, JobEntry, MonitoredContainer
from crondog.core.settings import Settings

__all__ = ["DATE_FORMAT", "compile_schedule", "render_entry", "render_keep_alive"]

logger = logging.getLogger(__name__)

#: ``date`` format used by every log line a job writes.
DATE_FORMAT: Final[str] = "+%d-%m-%Y %H:%M:%S"

_JOB_TAG: Final[str] = "[cron-restart]"


def _echo(level: str, message: str, sink: str) -> str:
    # \$ survives crond's /bin/sh so the inner sh evaluates it at run time.
    return f"echo \\$(date '{DATE_FORMAT}') {_JOB_TAG} {level}: {message} > {sink} 2>&1"


def render_entry(container: MonitoredContainer, settings: Settings) -> JobEntry:
    """Render the crontab fragment for one container."""
    schedule = container.schedule
    if not validate_cron_expression(schedule):
        logger.warning(
            "Container %s carries invalid schedule %r, using default %r.",
            container.target,
            schedule,
            settings.cron_default_schedule,
            extra={"event": events.SCHEDULE_DEFAULTED},
        )
        schedule = settings.cron_default_schedule

    target = escape_for_shell(container.target)
    stdout = settings.cron_job_stdout
    stderr = settings.cron_job_stderr
    restart = settings.cron_restart_command.format(
        timeout=container.stop_timeout,
        target=target,
    )

    success = _echo("INFO", f"SUCCESS restart container: {target}", stdout)
    failure = _echo("ERROR", f"FAILED restart container: {target}", stdout)
    command = (
        f"echo \\$(date '{DATE_FORMAT}') {_JOB_TAG} INFO: Restarting container: {target}"
        f" > {stdout} 2>{stderr}"
        f" && {restart} > /dev/null 2>&1;"
        f" if [ \\$? -eq 0 ]; then {success}; else {failure}; fi"
    )
    text = (
        f"# Restart job for container: {container.name or container.id} ({container.id})\n"
        f'{schedule} /bin/sh -c "{command}"\n'
    )
    return JobEntry(
        schedule=schedule,
        container_id=container.id,
        container_name=container.name,
        text=text,
    )


def render_keep_alive(settings: Settings) -> JobEntry:
    """Placeholder job that keeps ``crond`` busy when nothing is eligible."""
    text = (
        "# Minimal crontab entry to keep crond running\n"
        "# This will be replaced when containers are found\n"
        f"{KEEP_ALIVE_SCHEDULE} echo \"$(date '{DATE_FORMAT}') [crondog] "
        f'No containers to monitor" > {settings.cron_job_stdout} 2>&1\n'
    )
    return JobEntry(schedule=KEEP_ALIVE_SCHEDULE, text=text)


def compile_schedule(
    containers: Iterable[MonitoredContainer],
    settings: Settings,
) -> CompiledSchedule:
    """Compile *containers* into a deterministic crontab.

    Never fails for valid containers and never returns an empty schedule.
    """
    ordered = sorted(containers, key=lambda c: c.sort_key)

    if not ordered:
        entries: tuple[JobEntry, ...] = (render_keep_alive(settings),)
    else:
        entries = tuple(render_entry(container, settings) for container in ordered)

    text = "".join(entry.text for entry in entries)
    return CompiledSchedule(entries=entries, text=text)
