"""Idempotent crontab installation.

:class:`ScheduleSynchronizer` turns the current container snapshot into a
crontab and installs it only when it differs from what is installed.  Under
repeated polling with no runtime change, :meth:`~ScheduleSynchronizer.reconcile`
writes nothing, restarts nothing, and logs nothing above DEBUG.

Install protocol
----------------
1. The new crontab and its fingerprint are staged into temporary files next
   to their targets (same filesystem, so the rename is atomic), fsynced and
   chmodded ``0600``.
2. The old crontab is hard-linked aside, then ``os.replace`` swaps the
   crontab in, then the fingerprint record.  If the record cannot be
   replaced, the old crontab is moved back.
3. Only then is ``crontab <file>`` run and the daemon asked to restart.

A failure at any step leaves both the installed crontab and the recorded
fingerprint untouched.  The record is also checked against the crontab on
disk: if someone deletes or edits the installed file, the next reconcile
sees the divergence and reinstalls.

Concurrency
-----------
Reconciliation is only ever driven from the discovery loop, one pass at a
time.  Blocking work (docker calls, file I/O, the ``crontab`` subprocess)
runs in worker threads via :func:`asyncio.to_thread`.  Cancelling a cycle
does not stop a worker thread that is already installing, so installs and
:meth:`~ScheduleSynchronizer.clear` share a lock, and a reconcile that
began before the last ``clear()`` discards its result instead of writing a
stale record.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from crondog.core import events
from crondog.core.exceptions import InstallError
from crondog.core.models import (
    CompiledSchedule,
    ReconcileResult,
    ScheduleSnapshot,
    fingerprint_text,
)
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource
from crondog.schedule.compiler import compile_schedule

__all__ = ["ScheduleSynchronizer", "install_crontab"]

logger = logging.getLogger(__name__)

_FILE_MODE = 0o600
_INSTALL_TIMEOUT_S = 30


def install_crontab(binary: str, path: Path) -> bool:
    """Hand *path* to the ``crontab`` installer, if one is available.

    Failure is reported but not fatal: ``crond`` reads the file directly on
    its next start either way.
    """
    resolved = shutil.which(binary)
    if resolved is None:
        logger.warning("%s command not available, skipping installation.", binary)
        return False

    try:
        result = subprocess.run(
            [resolved, str(path)],
            capture_output=True,
            text=True,
            timeout=_INSTALL_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Failed to install crontab using %s: %s", binary, exc)
        return False

    if result.returncode != 0:
        logger.warning(
            "Failed to install crontab using %s (exit %d): %s",
            binary,
            result.returncode,
            result.stderr.strip(),
        )
        return False

    logger.info("Crontab installed successfully.")
    return True


def _stage(target: Path, text: str) -> str:
    """Write *text* to a temp file beside *target* and return its path."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, _FILE_MODE)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise
    return tmp


def _restore(target: Path, backup: str | None) -> None:
    """Put the pre-install crontab back (or remove *target* if there was none)."""
    try:
        if backup is None:
            target.unlink(missing_ok=True)
        else:
            os.replace(backup, target)
    except OSError as exc:
        logger.error("Cannot restore previous crontab %s: %s", target, exc)


class ScheduleSynchronizer:
    """Compile, diff and install the restart crontab.

    Args:
        settings: Active settings (file locations, compose filter, defaults).
        source: Container source queried on every reconcile.
        restart_hook: Called after a changed crontab is installed.  Wired to
            :meth:`~crondog.supervisor.job_runner.JobRunnerSupervisor.request_restart`
            because ``crond`` only reads its crontab at startup.
        installer: ``(path) -> bool`` load/install entry point.  Defaults to
            running the configured ``crontab`` binary.
    """

    def __init__(
        self,
        settings: Settings,
        source: ContainerSource,
        *,
        restart_hook: Callable[[], object] | None = None,
        installer: Callable[[Path], bool] | None = None,
    ) -> None:
        self._settings = settings
        self._source = source
        self._restart_hook = restart_hook
        self._installer = installer or (
            lambda path: install_crontab(settings.crontab_binary, path)
        )
        self._installed: ScheduleSnapshot | None = None
        self._lock = threading.Lock()
        self._generation = 0

    # ------------------------------------------------------------------
    # Properties / wiring
    # ------------------------------------------------------------------

    @property
    def installed(self) -> ScheduleSnapshot | None:
        """Snapshot of the installed crontab, or ``None`` before the first pass."""
        return self._installed

    def set_restart_hook(self, hook: Callable[[], object] | None) -> None:
        self._restart_hook = hook

    # ------------------------------------------------------------------
    # Fingerprints on disk
    # ------------------------------------------------------------------

    def recorded_fingerprint(self) -> str | None:
        """Fingerprint stored in the checksum record, or ``None``."""
        try:
            value = self._settings.checksum_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Cannot read checksum record: %s", exc)
            return None
        return value or None

    def installed_fingerprint(self) -> str | None:
        """Fingerprint of the crontab file actually on disk, or ``None``."""
        try:
            return fingerprint_text(self._settings.crontab_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Cannot read installed crontab: %s", exc)
            return None

    def is_current(self, compiled: CompiledSchedule) -> bool:
        """``True`` when *compiled* is what is installed and recorded."""
        fingerprint = compiled.fingerprint
        return (
            self.recorded_fingerprint() == fingerprint
            and self.installed_fingerprint() == fingerprint
        )

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def install(self, compiled: CompiledSchedule) -> ScheduleSnapshot:
        """Atomically replace the crontab and its fingerprint record.

        The previous crontab is hard-linked aside first, so a failure to
        replace the record puts it back: either both files change or neither.

        Raises:
            InstallError: Nothing on disk was changed.
        """
        crontab_path = self._settings.crontab_path
        checksum_path = self._settings.checksum_path
        staged: list[str] = []
        try:
            crontab_tmp = _stage(crontab_path, compiled.text)
            staged.append(crontab_tmp)
            checksum_tmp = _stage(checksum_path, compiled.fingerprint + "\n")
            staged.append(checksum_tmp)

            backup: str | None = None
            if crontab_path.exists():
                backup = crontab_tmp + ".prev"
                os.link(crontab_path, backup)
                staged.append(backup)

            os.replace(crontab_tmp, crontab_path)
            staged.remove(crontab_tmp)
            try:
                os.replace(checksum_tmp, checksum_path)
            except OSError:
                _restore(crontab_path, backup)
                raise
            staged.remove(checksum_tmp)
        except OSError as exc:
            raise InstallError(str(crontab_path), exc.strerror or str(exc)) from exc
        finally:
            for tmp in staged:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)

        return ScheduleSnapshot(fingerprint=compiled.fingerprint, path=crontab_path)

    def ensure_installed(self) -> bool:
        """Install the keep-alive crontab if the crontab file is missing or empty.

        Returns:
            ``True`` if a file had to be written.

        Raises:
            InstallError: The keep-alive crontab could not be written.
        """
        path = self._settings.crontab_path
        with self._lock:
            if path.exists() and path.stat().st_size > 0:
                return False
            logger.info("No crontab found, creating minimal crontab to keep crond running.")
            self._installed = self.install(compile_schedule((), self._settings))
        return True

    def clear(self) -> None:
        """Forget the installed state and delete the fingerprint record.

        The next process start then performs a full install instead of
        trusting a record that may describe a different container set.
        Waits for an install already running in a worker thread, and makes
        any reconcile that started before this call discard its result.
        """
        with self._lock:
            self._generation += 1
            with contextlib.suppress(FileNotFoundError):
                self._settings.checksum_path.unlink()
            self._installed = None

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def _apply(self, compiled: CompiledSchedule, generation: int) -> bool | None:
        """Install *compiled* unless current; ``None`` if cleared since *generation*."""
        with self._lock:
            if generation != self._generation:
                return None
            if self.is_current(compiled):
                self._installed = ScheduleSnapshot(
                    fingerprint=compiled.fingerprint,
                    path=self._settings.crontab_path,
                )
                return False
            self._installed = self.install(compiled)
            return True

    async def reconcile(self) -> ReconcileResult:
        """Bring the installed crontab in line with the running containers.

        Returns:
            ``CHANGED`` when a new crontab was installed, ``UNCHANGED`` when
            the installed one already matches, ``ERROR`` when the runtime
            was unreachable or the install failed (previous crontab kept).
        """
        generation = self._generation
        snapshot = await asyncio.to_thread(self._source.snapshot, self._settings.compose_project)
        if not snapshot.available:
            # Never let an outage reduce the crontab to the keep-alive entry.
            logger.warning("Container runtime unavailable, keeping installed crontab.")
            return ReconcileResult.ERROR

        compiled = compile_schedule(snapshot.containers, self._settings)

        try:
            changed = await asyncio.to_thread(self._apply, compiled, generation)
        except InstallError as exc:
            logger.error(
                "Failed to update crontab: %s",
                exc,
                extra={"event": events.SCHEDULE_INSTALL_ERROR},
            )
            return ReconcileResult.ERROR

        if changed is None:
            logger.info("Synchronizer was cleared during reconcile, result discarded.")
            return ReconcileResult.UNCHANGED

        if not changed:
            logger.debug(
                "Crontab unchanged (%s).",
                compiled.fingerprint[:12],
                extra={"event": events.SCHEDULE_UNCHANGED},
            )
            return ReconcileResult.UNCHANGED

        logger.info(
            "Container configuration changed, crontab updated (found %d container(s)).",
            compiled.container_count,
            extra={"event": events.SCHEDULE_CHANGED},
        )
        for line in compiled.text.splitlines():
            logger.debug("  %s", line)

        await asyncio.to_thread(self._installer, self._settings.crontab_path)

        if self._restart_hook is not None:
            self._restart_hook()

        return ReconcileResult.CHANGED
