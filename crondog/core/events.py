"""Structured log event name constants for Crondog.

Every key transition emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  ``LOG_FORMAT=json`` emits it as the
top-level ``event`` field; text mode appends it in parentheses.

Usage example::

    import logging
    from crondog.core import events

    logger = logging.getLogger(__name__)

    logger.info("Crontab updated", extra={"event": events.SCHEDULE_CHANGED})
"""

from __future__ import annotations

__all__ = [
    # Discovery cycle
    "CYCLE_START",
    "CYCLE_SKIPPED",
    "CYCLE_ERROR",
    # Schedule
    "SCHEDULE_CHANGED",
    "SCHEDULE_UNCHANGED",
    "SCHEDULE_INSTALL_ERROR",
    "SCHEDULE_DEFAULTED",
    # Job daemon
    "DAEMON_STARTED",
    "DAEMON_START_FAILED",
    "DAEMON_CRASHED",
    "DAEMON_RESTART_REQUESTED",
    "DAEMON_STOPPED",
    # Discovery loop
    "LOOP_STARTED",
    "LOOP_CRASHED",
    "LOOP_STOPPED",
    # Lifecycle
    "SHUTDOWN_REQUESTED",
    "SHUTDOWN_COMPLETE",
]

# ---------------------------------------------------------------------------
# Discovery cycle
# ---------------------------------------------------------------------------

#: Emitted at the start of every discovery cycle.
CYCLE_START: str = "CYCLE_START"

#: The runtime was unreachable; the cycle did not reconcile.
CYCLE_SKIPPED: str = "CYCLE_SKIPPED"

#: Reconciliation returned an error; the loop continues.
CYCLE_ERROR: str = "CYCLE_ERROR"

# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

#: A new crontab was installed.
SCHEDULE_CHANGED: str = "SCHEDULE_CHANGED"

#: The compiled crontab matched the installed one; nothing was written.
SCHEDULE_UNCHANGED: str = "SCHEDULE_UNCHANGED"

#: Writing the crontab or its fingerprint record failed.
SCHEDULE_INSTALL_ERROR: str = "SCHEDULE_INSTALL_ERROR"

#: A container label was missing or invalid and a default was substituted.
SCHEDULE_DEFAULTED: str = "SCHEDULE_DEFAULTED"

# ---------------------------------------------------------------------------
# Job daemon
# ---------------------------------------------------------------------------

#: ``crond`` launched and survived the start grace interval.
DAEMON_STARTED: str = "DAEMON_STARTED"

#: ``crond`` could not be launched or exited during the grace interval.
DAEMON_START_FAILED: str = "DAEMON_START_FAILED"

#: A running ``crond`` was found dead by the liveness check.
DAEMON_CRASHED: str = "DAEMON_CRASHED"

#: A schedule change asked the running ``crond`` to terminate.
DAEMON_RESTART_REQUESTED: str = "DAEMON_RESTART_REQUESTED"

#: ``crond`` was stopped during shutdown.
DAEMON_STOPPED: str = "DAEMON_STOPPED"

# ---------------------------------------------------------------------------
# Discovery loop
# ---------------------------------------------------------------------------

#: The discovery loop task was (re)started.
LOOP_STARTED: str = "LOOP_STARTED"

#: The discovery loop task finished without being asked to.
LOOP_CRASHED: str = "LOOP_CRASHED"

#: The discovery loop task was stopped during shutdown.
LOOP_STOPPED: str = "LOOP_STOPPED"

# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

#: A termination signal was received.
SHUTDOWN_REQUESTED: str = "SHUTDOWN_REQUESTED"

#: Both supervised processes are stopped and transient state removed.
SHUTDOWN_COMPLETE: str = "SHUTDOWN_COMPLETE"
