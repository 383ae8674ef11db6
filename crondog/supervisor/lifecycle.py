"""Top-level lifecycle: startup, periodic supervision, graceful shutdown.

Startup order
~~~~~~~~~~~~~
1. Initial reconcile.  Failure here is fatal
   (:class:`~crondog.core.exceptions.StartupError`): without a crontab there
   is nothing to supervise.
2. Guarantee a non-empty crontab so ``crond`` has something to run.
3. Start ``crond``.  Failure is logged only; the next tick retries.
4. Start the discovery loop.

Then the controller ticks every ``SUPERVISOR_TICK_INTERVAL`` seconds,
checking the daemon first and the loop second, until SIGTERM/SIGINT.

Shutdown order
~~~~~~~~~~~~~~
Discovery loop first (so no reconcile can restart ``crond`` mid-shutdown),
then ``crond``, then the fingerprint record is deleted so the next start
performs a full install.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass

from crondog.core import events
from crondog.core.exceptions import InstallError, StartupError
from crondog.core.models import ReconcileResult
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource
from crondog.schedule.synchronizer import ScheduleSynchronizer
from crondog.supervisor.discovery import DiscoveryLoopSupervisor
from crondog.supervisor.job_runner import JobRunnerSupervisor, Launcher
from crondog.supervisor.process import ProcessHandle

__all__ = ["LifecycleController", "LifecycleState"]

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@dataclass
class LifecycleState:
    """Mutable state bag owned by :class:`LifecycleController`.

    Attributes:
        shutdown_requested: Set once by the first termination signal.
        signal_name: Name of the signal that requested shutdown, if any.
        job_runner_handle: Current ``crond`` handle, refreshed every tick.
        discovery_handle: Current discovery task, refreshed every tick.
        shutdown_complete: Guards :meth:`LifecycleController.shutdown`
            against running twice.
    """

    shutdown_requested: bool = False
    signal_name: str | None = None
    job_runner_handle: ProcessHandle | None = None
    discovery_handle: asyncio.Task[None] | None = None
    shutdown_complete: bool = False


class LifecycleController:
    """Owns both supervisors and the process-wide start/tick/stop sequence.

    The synchronizer's restart hook is wired to the job runner here, so a
    changed crontab always reaches ``crond``.
    """

    def __init__(
        self,
        settings: Settings,
        synchronizer: ScheduleSynchronizer,
        job_runner: JobRunnerSupervisor,
        discovery: DiscoveryLoopSupervisor,
    ) -> None:
        self._settings = settings
        self._synchronizer = synchronizer
        self._job_runner = job_runner
        self._discovery = discovery
        self._wake = asyncio.Event()
        self.state = LifecycleState()
        synchronizer.set_restart_hook(job_runner.request_restart)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: ContainerSource,
        *,
        launcher: Launcher | None = None,
    ) -> LifecycleController:
        """Assemble the synchronizer and both supervisors around *source*."""
        synchronizer = ScheduleSynchronizer(settings, source)
        job_runner = JobRunnerSupervisor(settings, launcher=launcher)
        discovery = DiscoveryLoopSupervisor(settings, source, synchronizer)
        return cls(settings, synchronizer, job_runner, discovery)

    @property
    def job_runner(self) -> JobRunnerSupervisor:
        return self._job_runner

    @property
    def discovery(self) -> DiscoveryLoopSupervisor:
        return self._discovery

    def _refresh_handles(self) -> None:
        self.state.job_runner_handle = self._job_runner.handle
        self.state.discovery_handle = self._discovery.handle

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Install the initial crontab and start both supervised activities.

        Raises:
            StartupError: The initial crontab could not be installed.
        """
        logger.info("Performing initial container scan...")
        result = await self._synchronizer.reconcile()
        if result is ReconcileResult.ERROR:
            raise StartupError("Failed to perform initial crontab update")

        try:
            await asyncio.to_thread(self._synchronizer.ensure_installed)
        except InstallError as exc:
            raise StartupError(str(exc)) from exc

        if not await self._job_runner.start():
            logger.error(
                "Failed to start cron daemon on initial startup; "
                "will keep trying on every supervisor tick."
            )

        self._discovery.start()
        self._refresh_handles()
        logger.info("All services started successfully.")

    async def tick(self) -> None:
        """One supervision pass: daemon first, then the discovery loop."""
        await self._job_runner.check()
        self._discovery.check()
        self._refresh_handles()

    def request_shutdown(self, signame: str = "shutdown request") -> None:
        """Ask :meth:`run` to stop.  Safe to call repeatedly or from a signal."""
        if self.state.shutdown_requested:
            return
        self.state.shutdown_requested = True
        self.state.signal_name = signame
        logger.info(
            "Received %s, shutting down gracefully...",
            signame,
            extra={"event": events.SHUTDOWN_REQUESTED},
        )
        self._job_runner.halt()
        self._wake.set()

    async def shutdown(self) -> None:
        """Stop the discovery loop, then ``crond``, then drop the record."""
        if self.state.shutdown_complete:
            return
        self.state.shutdown_complete = True

        self._job_runner.halt()
        await self._discovery.stop(self._settings.monitor_stop_timeout)
        await self._job_runner.stop(self._settings.crond_stop_timeout)
        self.state.job_runner_handle = None
        self.state.discovery_handle = None
        await asyncio.to_thread(self._synchronizer.clear)

        logger.info("Cleanup completed.", extra={"event": events.SHUTDOWN_COMPLETE})

    async def run(self) -> None:
        """Run until SIGTERM/SIGINT (or :meth:`request_shutdown`).

        Raises:
            StartupError: Startup failed; everything already started has
                been stopped again.
        """
        loop = asyncio.get_running_loop()
        for sig in _HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)

        try:
            await self.start()
            while not self.state.shutdown_requested:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wake.wait(),
                        timeout=self._settings.supervisor_tick_interval,
                    )
                if self.state.shutdown_requested:
                    break
                await self.tick()
        finally:
            await self.shutdown()
            for sig in _HANDLED_SIGNALS:
                with contextlib.suppress(Exception):
                    loop.remove_signal_handler(sig)
