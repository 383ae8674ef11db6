"""Process handle protocol and graceful-stop helper."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from typing import Protocol

from crondog.core.exceptions import ProcessStartError
from crondog.core.models import ProcessRole

__all__ = ["ProcessHandle", "is_alive", "launch_subprocess", "stop_process_gracefully"]

logger = logging.getLogger(__name__)

#: How long to wait for the exit status after SIGKILL.
_KILL_REAP_TIMEOUT_S = 2.0


class ProcessHandle(Protocol):
    """The subset of :class:`asyncio.subprocess.Process` supervisors rely on."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


def is_alive(handle: ProcessHandle | None) -> bool:
    """``True`` while *handle* refers to a process that has not exited."""
    return handle is not None and handle.returncode is None


async def launch_subprocess(argv: Sequence[str]) -> ProcessHandle:
    """Spawn *argv* with inherited stdout/stderr.

    Raises:
        ProcessStartError: The executable could not be started.
    """
    try:
        return await asyncio.create_subprocess_exec(*argv)
    except OSError as exc:
        raise ProcessStartError(ProcessRole.JOB_DAEMON, f"{argv[0]}: {exc}") from exc


async def stop_process_gracefully(
    handle: ProcessHandle | None,
    name: str,
    timeout: float,
) -> bool:
    """Send SIGTERM, wait up to *timeout* seconds, then SIGKILL.

    Returns:
        ``True`` if the process exited on its own (or was already gone),
        ``False`` if it had to be killed.
    """
    if handle is None or handle.returncode is not None:
        return True

    logger.info("Stopping %s (PID %d)...", name, handle.pid)
    with contextlib.suppress(ProcessLookupError):
        handle.terminate()

    try:
        await asyncio.wait_for(handle.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("%s did not stop within %.0f s, sending SIGKILL.", name, timeout)
        with contextlib.suppress(ProcessLookupError):
            handle.kill()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(handle.wait(), timeout=_KILL_REAP_TIMEOUT_S)
        return False

    logger.info("%s stopped gracefully.", name)
    return True
