"""Crondog settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

Every field maps 1-to-1 to an environment variable: the field name is the
**lowercase** version of the env-var name (e.g. ``CRON_CONTAINER_LABEL`` →
``cron_container_label``).  The variable names are the ones documented in
the ``docker-compose.yml`` example, so existing deployments keep working.

Typical usage::

    from crondog.core.settings import Settings

    settings = Settings()                   # loads from env + .env
    print(settings.crontab_path)            # /etc/crontabs/watchdog
    print(settings.compose_project)         # None when unset
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from crondog.core.cron import validate_cron_expression
from crondog.core.exceptions import ConfigError

__all__ = ["Settings", "load_settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Container runtime
    # ------------------------------------------------------------------
    docker_sock: str = Field(
        default="/var/run/docker.sock",
        description="Unix socket path, tcp://host:port or tcps://host:port.",
    )
    docker_cert_path: str = Field(
        default="/certs",
        description="Directory holding ca.pem/cert.pem/key.pem for tcps:// endpoints.",
    )

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------
    cron_container_label: str = Field(
        default="cron.restart",
        min_length=1,
        description="Label that opts a container into scheduled restarts (value 'true').",
    )
    cron_schedule_label: str = Field(
        default="cron.schedule",
        min_length=1,
        description="Label holding the container's 5-field cron schedule.",
    )
    cron_timeout_label: str = Field(
        default="cron.timeout",
        min_length=1,
        description="Label holding the container's stop timeout in seconds.",
    )
    cron_compose_project_label: str = Field(
        default="",
        description="Only monitor containers of this compose project (empty = all).",
    )

    # ------------------------------------------------------------------
    # Schedule defaults
    # ------------------------------------------------------------------
    cron_default_schedule: str = Field(
        default="0 0 * * *",
        description="Schedule used when a container's label is missing or invalid.",
    )
    cron_default_stop_timeout: int = Field(
        default=10,
        ge=0,
        description="Seconds docker waits before killing a restarting container.",
    )
    cron_restart_command: str = Field(
        default="docker restart -t {timeout} {target}",
        description="Command template run by each job ({timeout}, {target}).",
    )
    cron_job_stdout: str = Field(
        default="/proc/1/fd/1",
        description="Where job output is written (the supervisor's stdout).",
    )
    cron_job_stderr: str = Field(
        default="/proc/1/fd/2",
        description="Where job errors are written (the supervisor's stderr).",
    )

    # ------------------------------------------------------------------
    # Files and binaries
    # ------------------------------------------------------------------
    crontab_file: str = Field(
        default="/etc/crontabs/watchdog",
        description="Job file read by crond.",
    )
    crontab_checksum_file: str = Field(
        default="/tmp/watchdog_crontab.checksum",
        description="Fingerprint record of the installed job file.",
    )
    crond_binary: str = Field(default="crond", description="Job-execution daemon.")
    crontab_binary: str = Field(default="crontab", description="Crontab installer.")
    crond_log_target: str = Field(
        default="/dev/stdout",
        description="crond -L log destination.",
    )
    cron_log_level: int = Field(
        default=2,
        ge=0,
        le=8,
        description="crond -l verbosity.",
    )

    # ------------------------------------------------------------------
    # Supervision timings (seconds)
    # ------------------------------------------------------------------
    cron_monitor_interval: float = Field(
        default=30,
        gt=0,
        description="Seconds between discovery cycles.",
    )
    supervisor_tick_interval: float = Field(
        default=10,
        gt=0,
        description="Seconds between supervisor liveness checks.",
    )
    crond_start_grace: float = Field(
        default=2,
        ge=0,
        description="Seconds to wait after launching crond before checking it.",
    )
    crond_crash_backoff: float = Field(
        default=5,
        ge=0,
        description="Seconds to wait before relaunching a crashed crond.",
    )
    monitor_stop_timeout: float = Field(
        default=5,
        ge=0,
        description="Bounded wait for the discovery loop during shutdown.",
    )
    crond_stop_timeout: float = Field(
        default=10,
        ge=0,
        description="Bounded wait for crond during shutdown.",
    )
    startup_connect_attempts: int = Field(
        default=3,
        ge=1,
        description="Runtime connectivity attempts before startup fails.",
    )
    startup_connect_wait: float = Field(
        default=2,
        ge=0,
        description="Seconds between startup connectivity attempts.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("cron_default_schedule")
    @classmethod
    def _validate_default_schedule(cls, v: str) -> str:
        if not validate_cron_expression(v):
            raise ValueError(f"cron_default_schedule must be a 5-field cron expression, got {v!r}")
        return " ".join(v.split())

    @field_validator("cron_restart_command")
    @classmethod
    def _validate_restart_command(cls, v: str) -> str:
        if "{target}" not in v:
            raise ValueError("cron_restart_command must contain the {target} placeholder")
        # Only {timeout} and {target} are filled in; literal braces need doubling.
        try:
            v.format(timeout=0, target="container")
        except (AttributeError, IndexError, KeyError, ValueError) as exc:
            raise ValueError(
                f"cron_restart_command may only use {{timeout}} and {{target}} "
                f"(write literal braces as {{{{ }}}}): {exc!r}"
            ) from exc
        return v

    @field_validator("cron_compose_project_label")
    @classmethod
    def _strip_project(cls, v: str) -> str:
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_intervals(self) -> Settings:
        """The liveness check must run more often than discovery."""
        if self.supervisor_tick_interval >= self.cron_monitor_interval:
            raise ValueError(
                f"supervisor_tick_interval ({self.supervisor_tick_interval}) "
                f"must be shorter than cron_monitor_interval ({self.cron_monitor_interval})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def compose_project(self) -> str | None:
        """Compose project filter, or ``None`` when every project is monitored."""
        return self.cron_compose_project_label or None

    @property
    def crontab_path(self) -> Path:
        return Path(self.crontab_file)

    @property
    def checksum_path(self) -> Path:
        return Path(self.crontab_checksum_file)

    def crond_command(self) -> list[str]:
        """Argument vector used to launch the job-execution daemon in the foreground."""
        return [
            self.crond_binary,
            "-f",
            "-l",
            str(self.cron_log_level),
            "-L",
            self.crond_log_target,
        ]


def load_settings(**overrides: object) -> Settings:
    """Build :class:`Settings`, converting validation failures to :class:`ConfigError`."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
