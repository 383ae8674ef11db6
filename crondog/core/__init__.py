"""Core domain models, settings, logging configuration, and shared utilities."""

from crondog.core.cron import escape_for_shell, validate_cron_expression
from crondog.core.exceptions import (
    ConfigError,
    CrondogError,
    InstallError,
    ProcessStartError,
    RuntimeUnavailableError,
    ScheduleError,
    StartupError,
    SupervisionError,
)
from crondog.core.logging_config import (
    JsonFormatter,
    configure_from_settings,
    configure_logging,
)
from crondog.core.models import (
    CompiledSchedule,
    ContainerRef,
    ContainerSnapshot,
    JobEntry,
    JobRunnerState,
    MonitoredContainer,
    ProcessRole,
    ReconcileResult,
    ScheduleSnapshot,
)
from crondog.core.settings import Settings, load_settings

__all__ = [
    # Logging
    "configure_logging",
    "configure_from_settings",
    "JsonFormatter",
    # Cron helpers
    "escape_for_shell",
    "validate_cron_expression",
    # Domain models
    "CompiledSchedule",
    "ContainerRef",
    "ContainerSnapshot",
    "JobEntry",
    "JobRunnerState",
    "MonitoredContainer",
    "ProcessRole",
    "ReconcileResult",
    "ScheduleSnapshot",
    # Settings
    "Settings",
    "load_settings",
    # Exceptions: base
    "CrondogError",
    # Exceptions: config
    "ConfigError",
    "StartupError",
    # Exceptions: runtime
    "RuntimeUnavailableError",
    # Exceptions: schedule
    "ScheduleError",
    "InstallError",
    # Exceptions: supervision
    "SupervisionError",
    "ProcessStartError",
]
