"""Startup checks run once before supervision begins.

Every check either passes, logs a warning, or raises
:class:`~crondog.core.exceptions.ConfigError`.  A failed check is fatal
(exit status 1) and is accompanied by troubleshooting hints, since the usual
causes (socket not mounted, wrong group, missing ``crond``) are deployment
mistakes rather than transient faults.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from collections.abc import Callable
from pathlib import Path

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from crondog.core.exceptions import ConfigError, RuntimeUnavailableError
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource
from crondog.runtime.docker_source import docker_base_url

__all__ = [
    "check_binaries",
    "check_connectivity",
    "check_docker_socket",
    "check_writable_paths",
    "run_preflight",
]

logger = logging.getLogger(__name__)


def _log_socket_help(sock: str) -> None:
    logger.error("To fix this, mount the Docker socket and grant access to its group:")
    logger.error("  docker run -v %s:%s --group-add $(stat -c '%%g' %s) ...", sock, sock, sock)
    logger.error("On Docker Desktop the container must run as root (user: root).")


def _log_connectivity_help(sock: str) -> None:
    logger.error("Cannot connect to Docker daemon. Please ensure:")
    logger.error("1. Docker socket is mounted: -v %s:%s", sock, sock)
    logger.error("2. Container has proper group permissions: --group-add $(stat -c '%%g' %s)", sock)
    logger.error("3. For Docker Desktop: run as root user (--user root or user: root in compose)")


def check_docker_socket(settings: Settings) -> None:
    """Verify a local Docker socket is readable by a non-root user.

    Remote (``tcp://``/``tcps://``) endpoints and root users are skipped.
    Not being in the socket's group is only a warning.
    """
    url, _tls = docker_base_url(settings.docker_sock)
    if not url.startswith("unix://") or os.geteuid() == 0:
        return

    path = url.removeprefix("unix://")
    try:
        st = os.stat(path)
    except OSError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        return

    if not os.access(path, os.R_OK):
        _log_socket_help(path)
        raise ConfigError(f"Docker socket {path} is not readable by uid {os.geteuid()}")

    groups = set(os.getgroups()) | {os.getegid()}
    logger.debug("Docker socket GID: %d, user groups: %s", st.st_gid, sorted(groups))
    if st.st_gid not in groups:
        logger.warning(
            "User is not in the Docker socket group (%d); this may cause permission issues.",
            st.st_gid,
        )


def check_connectivity(
    settings: Settings,
    source: ContainerSource,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Ping the runtime, retrying a few times before giving up.

    Raises:
        ConfigError: The runtime never answered.
    """
    attempts = settings.startup_connect_attempts

    def _ping() -> None:
        if not source.ping():
            raise RuntimeUnavailableError(source.endpoint, "ping failed")

    def _before_sleep(rs: RetryCallState) -> None:
        logger.warning(
            "Docker not reachable at %s (attempt %d/%d), retrying in %.0f s...",
            source.endpoint,
            rs.attempt_number,
            attempts,
            settings.startup_connect_wait,
        )

    try:
        for attempt in Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(settings.startup_connect_wait),
            retry=retry_if_exception_type(RuntimeUnavailableError),
            reraise=True,
            before_sleep=_before_sleep,
            sleep=sleep,
        ):
            with attempt:
                _ping()
    except RuntimeUnavailableError as exc:
        _log_connectivity_help(settings.docker_sock)
        raise ConfigError(f"Cannot connect to Docker daemon: {exc}") from exc

    logger.info("Docker connectivity verified successfully.")


def check_binaries(settings: Settings) -> None:
    """Require the job daemon on ``PATH``; a missing installer is tolerated."""
    if shutil.which(settings.crond_binary) is None:
        raise ConfigError(f"{settings.crond_binary} command not found")
    if shutil.which(settings.crontab_binary) is None:
        logger.warning(
            "%s command not available; the crontab file will be read directly by %s.",
            settings.crontab_binary,
            settings.crond_binary,
        )


def _ensure_writable_dir(directory: Path, what: str) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create {what} {directory}: {exc}") from exc
    if not os.access(directory, os.W_OK):
        raise ConfigError(f"{what.capitalize()} {directory} is not writable")


def check_writable_paths(settings: Settings) -> None:
    """Make sure the crontab and its checksum record can be replaced."""
    _ensure_writable_dir(settings.crontab_path.parent, "crontab directory")
    _ensure_writable_dir(settings.checksum_path.parent, "checksum directory")

    crontab = settings.crontab_path
    if crontab.exists() and not os.access(crontab, os.W_OK):
        raise ConfigError(f"Crontab file {crontab} is not writable")


def run_preflight(
    settings: Settings,
    source: ContainerSource,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Run every startup check in order.

    Raises:
        ConfigError: On the first failing check.
    """
    logger.info(
        "Starting scheduler watchdog for Docker containers with label: %s",
        settings.cron_container_label,
    )
    logger.info("Monitor interval: %.0f seconds", settings.cron_monitor_interval)
    if settings.compose_project:
        logger.info("Restricted to compose project: %s", settings.compose_project)

    check_docker_socket(settings)
    check_connectivity(settings, source, sleep=sleep)
    check_binaries(settings)
    check_writable_paths(settings)
    logger.info("Watchdog initialization completed successfully.")
