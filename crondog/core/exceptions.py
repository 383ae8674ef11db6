"""Crondog exception taxonomy.

Every custom exception inherits from :class:`CrondogError`.  Exceptions are
organised by the layer that raises them so callers can catch at the right
granularity:

    Layer hierarchy
    ---------------
    CrondogError
    ├── ConfigError
    │   └── StartupError
    ├── RuntimeUnavailableError
    ├── ScheduleError
    │   └── InstallError
    └── SupervisionError
        └── ProcessStartError

Only :class:`ConfigError` (and its subclass :class:`StartupError`) is fatal:
the CLI maps it to exit status 1 before the supervision loop is entered.
Everything else is recovered locally by the layer that catches it.

Usage:

    from crondog.core.exceptions import InstallError

    raise InstallError("/etc/crontabs/watchdog", "No space left on device") from exc
"""

from __future__ import annotations

import logging

__all__ = [
    "CrondogError",
    # Config
    "ConfigError",
    "StartupError",
    # Runtime
    "RuntimeUnavailableError",
    # Schedule
    "ScheduleError",
    "InstallError",
    # Supervision
    "SupervisionError",
    "ProcessStartError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CrondogError(Exception):
    """Root exception for all Crondog errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(CrondogError):
    """Raised when the process cannot run with the given environment.

    Examples:
        - The crontab location is not writable.
        - The ``crond`` binary is not on ``PATH``.
        - The container runtime is unreachable at startup.
        - An environment variable fails validation.
    """


class StartupError(ConfigError):
    """Raised when the initial schedule install fails during startup."""


# ---------------------------------------------------------------------------
# Runtime layer
# ---------------------------------------------------------------------------


class RuntimeUnavailableError(CrondogError):
    """Raised when the container runtime cannot be reached.

    Transient: the discovery loop logs it and retries on the next cycle.

    Args:
        endpoint: The runtime endpoint that was contacted.
        message: Human-readable error description.
    """

    def __init__(self, endpoint: str, message: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"[{endpoint}] {message}")


# ---------------------------------------------------------------------------
# Schedule layer
# ---------------------------------------------------------------------------


class ScheduleError(CrondogError):
    """Base class for schedule compilation and installation errors."""


class InstallError(ScheduleError):
    """Raised when the job file or its fingerprint record cannot be written.

    The previously installed schedule is guaranteed untouched when this is
    raised.

    Args:
        path: The file that could not be written.
        message: Human-readable error description.
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"Cannot install {path}: {message}")


# ---------------------------------------------------------------------------
# Supervision layer
# ---------------------------------------------------------------------------


class SupervisionError(CrondogError):
    """Base class for errors raised while supervising background processes."""


class ProcessStartError(SupervisionError):
    """Raised when a supervised process cannot be launched.

    Args:
        role: The supervised role (e.g. ``"job-daemon"``).
        message: Human-readable error description.
    """

    def __init__(self, role: str, message: str) -> None:
        self.role = role
        super().__init__(f"[{role}] {message}")
