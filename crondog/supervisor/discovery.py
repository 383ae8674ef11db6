"""Supervision of the container discovery loop.

The loop runs as an :class:`asyncio.Task`.  Each cycle pings the runtime,
reconciles the crontab, then waits the monitor interval on a stop event so
shutdown never has to sit out a full interval.  Cycle-level failures are
logged and retried next cycle; only an unexpected exception ends the task,
and :meth:`DiscoveryLoopSupervisor.check` restarts it on the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid

from crondog.core import events
from crondog.core.logging_config import CYCLE_ID_CTX
from crondog.core.models import ReconcileResult
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource
from crondog.schedule.synchronizer import ScheduleSynchronizer

__all__ = ["DiscoveryLoopSupervisor"]

logger = logging.getLogger(__name__)


class DiscoveryLoopSupervisor:
    """Own the discovery task: start it, restart it if it dies, stop it."""

    def __init__(
        self,
        settings: Settings,
        source: ContainerSource,
        synchronizer: ScheduleSynchronizer,
    ) -> None:
        self._settings = settings
        self._source = source
        self._synchronizer = synchronizer
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.cycles = 0

    @property
    def handle(self) -> asyncio.Task[None] | None:
        return self._task

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Loop body
    # ------------------------------------------------------------------

    async def run_cycle(self) -> ReconcileResult | None:
        """Run one discovery cycle.

        Returns:
            The reconcile outcome, or ``None`` when the runtime was
            unreachable and the cycle was skipped.
        """
        token = CYCLE_ID_CTX.set(uuid.uuid4().hex[:8])
        try:
            self.cycles += 1
            logger.debug("Checking for container changes...", extra={"event": events.CYCLE_START})

            reachable = await asyncio.to_thread(self._source.ping)
            if not reachable:
                logger.warning(
                    "Cannot connect to Docker at %s, skipping this cycle.",
                    self._source.endpoint,
                    extra={"event": events.CYCLE_SKIPPED},
                )
                return None

            result = await self._synchronizer.reconcile()
            if result is ReconcileResult.ERROR:
                logger.error(
                    "Failed to update crontab, retrying in %.0f s.",
                    self._settings.cron_monitor_interval,
                    extra={"event": events.CYCLE_ERROR},
                )
            return result
        finally:
            CYCLE_ID_CTX.reset(token)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_cycle()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._settings.cron_monitor_interval,
                )

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Start the loop task if it is not already running."""
        if self._task is not None and not self._task.done():
            return self._task

        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="crondog-discovery-loop")
        logger.info(
            "Container monitoring started (interval %.0f s).",
            self._settings.cron_monitor_interval,
            extra={"event": events.LOOP_STARTED},
        )
        return self._task

    def check(self) -> bool:
        """Restart the loop immediately if its task has finished.

        Returns:
            ``True`` when the loop is running after the check.
        """
        if self.is_alive():
            return True
        if self._stop_event.is_set():
            return False

        task = self._task
        if task is not None:
            exc = None if task.cancelled() else task.exception()
            logger.error(
                "Container monitor stopped unexpectedly (%s), restarting...",
                type(exc).__name__ if exc is not None else "exited",
                exc_info=exc,
                extra={"event": events.LOOP_CRASHED},
            )
        self.start()
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        """Signal the loop to stop and wait up to *timeout* seconds.

        A loop still busy after the timeout is cancelled.

        Returns:
            ``True`` if the loop finished on its own.
        """
        if timeout is None:
            timeout = self._settings.monitor_stop_timeout

        self._stop_event.set()
        task, self._task = self._task, None
        if task is None:
            return True

        if not task.done():
            logger.info("Stopping container monitor...")
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except TimeoutError:
            logger.warning("Container monitor did not stop within %.0f s, cancelled.", timeout)
            return False
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except Exception:
            logger.exception("Container monitor failed while stopping.")

        logger.info("Container monitor stopped.", extra={"event": events.LOOP_STOPPED})
        return True
