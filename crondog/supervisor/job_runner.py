"""Supervision of the job-execution daemon (``crond``).

``crond`` reads its crontab only when it starts, so every installed change
is followed by a restart, and a daemon that dies is relaunched after a
short backoff.  State transitions are documented on
:class:`~crondog.core.models.JobRunnerState`.

Retiring handles
~~~~~~~~~~~~~~~~
:meth:`JobRunnerSupervisor.request_restart` is called synchronously from the
synchronizer's restart hook, so it can only *signal* the old daemon.  The
signalled handle is kept as "retiring" and the next :meth:`start` waits for
it to exit (escalating to SIGKILL) before launching a replacement.  Two
daemons never run the same jobs at once.

Shutdown
~~~~~~~~
The start grace and crash backoff are raced against
:meth:`JobRunnerSupervisor.halt`.  Once halted, :meth:`~JobRunnerSupervisor.check`
and :meth:`~JobRunnerSupervisor.start` return without launching, so a
shutdown signal that arrives during a backoff does not spawn a new daemon.

Typical usage::

    runner = JobRunnerSupervisor(settings)
    await runner.start()
    ...
    await runner.check()      # once per supervisor tick
    ...
    await runner.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence

from crondog.core import events
from crondog.core.exceptions import ProcessStartError
from crondog.core.models import JobRunnerState
from crondog.core.settings import Settings
from crondog.supervisor.process import (
    ProcessHandle,
    is_alive,
    launch_subprocess,
    stop_process_gracefully,
)

__all__ = ["JobRunnerSupervisor", "Launcher"]

logger = logging.getLogger(__name__)

#: ``(argv) -> handle`` coroutine used to spawn the daemon.
Launcher = Callable[[Sequence[str]], Awaitable[ProcessHandle]]


class JobRunnerSupervisor:
    """Start, check, restart and stop the job-execution daemon.

    Args:
        settings: Provides the daemon command line and the grace, backoff
            and stop timings.
        launcher: Spawns the daemon.  Defaults to
            :func:`~crondog.supervisor.process.launch_subprocess`.
        sleep: Awaitable sleep, injectable so tests run without waiting.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        launcher: Launcher | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._launcher = launcher or launch_subprocess
        self._sleep = sleep
        self._state = JobRunnerState.ABSENT
        self._handle: ProcessHandle | None = None
        self._retiring: ProcessHandle | None = None
        self._restart_pending = False
        self._halted = asyncio.Event()

    @property
    def state(self) -> JobRunnerState:
        return self._state

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    def is_alive(self) -> bool:
        return is_alive(self._handle)

    @property
    def halted(self) -> bool:
        return self._halted.is_set()

    def halt(self) -> None:
        """Refuse further launches and cut short a pending grace or backoff.

        Called from the shutdown path.  A halted supervisor never launches
        the daemon again; :meth:`stop` still stops what is running.
        """
        self._halted.set()

    async def _pause(self, seconds: float) -> bool:
        """Sleep for *seconds*; ``False`` if :meth:`halt` cut the pause short."""
        if self._halted.is_set():
            return False
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        halted = asyncio.ensure_future(self._halted.wait())
        try:
            await asyncio.wait({sleeper, halted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            halted.cancel()
        return not self._halted.is_set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _reap_retiring(self) -> None:
        retiring, self._retiring = self._retiring, None
        if retiring is not None:
            await stop_process_gracefully(
                retiring, "previous crond", self._settings.crond_stop_timeout
            )

    async def start(self) -> bool:
        """Launch the daemon and check it is alive after the start grace period.

        Returns:
            ``True`` when the daemon is running afterwards.  Always ``False``
            once halted, without launching anything.
        """
        if self._state in (JobRunnerState.RUNNING, JobRunnerState.STARTING) and self.is_alive():
            return True

        if self._halted.is_set():
            logger.debug("Shutdown in progress, not starting crond.")
            return False

        await self._reap_retiring()

        self._state = JobRunnerState.STARTING
        logger.info("Starting crond with log level %d...", self._settings.cron_log_level)
        try:
            self._handle = await self._launcher(self._settings.crond_command())
        except ProcessStartError as exc:
            self._handle = None
            self._state = JobRunnerState.CRASHED
            logger.error(
                "Failed to start crond: %s",
                exc,
                extra={"event": events.DAEMON_START_FAILED},
            )
            return False

        # Cut short by halt(): check now and leave the handle for stop().
        await self._pause(self._settings.crond_start_grace)

        if not self.is_alive():
            returncode = self._handle.returncode if self._handle is not None else None
            self._state = JobRunnerState.CRASHED
            logger.error(
                "crond exited during startup (exit code %s).",
                returncode,
                extra={"event": events.DAEMON_START_FAILED},
            )
            return False

        self._state = JobRunnerState.RUNNING
        logger.info(
            "crond started successfully (PID %d).",
            self._handle.pid,
            extra={"event": events.DAEMON_STARTED},
        )

        # A new crontab landed while this daemon was still starting.
        if self._restart_pending:
            self._restart_pending = False
            self.request_restart()
        return True

    async def check(self) -> bool:
        """Periodic liveness check; relaunches a dead or missing daemon."""
        if self._state is JobRunnerState.STARTING:
            return False

        if self._state is JobRunnerState.RUNNING:
            if self.is_alive():
                return True
            returncode = self._handle.returncode if self._handle is not None else None
            logger.error(
                "crond process died (exit code %s), restarting...",
                returncode,
                extra={"event": events.DAEMON_CRASHED},
            )
            self._state = JobRunnerState.CRASHED

        if self._state is JobRunnerState.CRASHED and not await self._pause(
            self._settings.crond_crash_backoff
        ):
            logger.debug("Crash backoff interrupted by shutdown, not relaunching crond.")
            return False

        return await self.start()

    def request_restart(self) -> bool:
        """Retire the running daemon so the next start reads the new crontab.

        Returns:
            ``True`` if a running daemon was signalled.
        """
        if self._state is JobRunnerState.STARTING:
            self._restart_pending = True
            return False

        if self._state is not JobRunnerState.RUNNING or self._handle is None:
            logger.debug("crond is not running (%s), nothing to restart.", self._state)
            return False

        handle = self._handle
        logger.info(
            "Restarting crond to apply new crontab (PID %d)...",
            handle.pid,
            extra={"event": events.DAEMON_RESTART_REQUESTED},
        )
        with contextlib.suppress(ProcessLookupError):
            handle.terminate()
        self._retiring = handle
        self._handle = None
        self._state = JobRunnerState.ABSENT
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop the daemon (SIGTERM, bounded wait, SIGKILL).

        Returns:
            ``True`` if everything exited without being killed.
        """
        if timeout is None:
            timeout = self._settings.crond_stop_timeout

        handles = [h for h in (self._retiring, self._handle) if h is not None]
        self._retiring = None
        self._handle = None
        self._state = JobRunnerState.ABSENT
        self._restart_pending = False

        clean = True
        for handle in handles:
            clean = await stop_process_gracefully(handle, "crond", timeout) and clean

        if handles:
            logger.info("crond stopped.", extra={"event": events.DAEMON_STOPPED})
        return clean
