"""Shared pytest fixtures and configuration for the Crondog test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures: forced DEBUG logging, an isolated
environment, a settings factory rooted in ``tmp_path``, an in-memory
container source and a fake ``crond`` launcher.  No Docker engine or
``crond`` binary is needed to run the suite.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
from pydantic_settings import SettingsConfigDict

from crondog.core import configure_logging
from crondog.core.exceptions import ProcessStartError, RuntimeUnavailableError
from crondog.core.models import ContainerRef, ProcessRole
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource
from crondog.runtime.docker_source import COMPOSE_PROJECT_LABEL

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every Crondog-related env var for the duration of a test.

    Also disables pydantic-settings ``.env`` file loading so a developer's
    local ``.env`` does not leak into Settings isolation tests.
    """
    prefixes = (
        "CRON_",
        "CRONTAB_",
        "CROND_",
        "DOCKER_",
        "SUPERVISOR_",
        "MONITOR_",
        "STARTUP_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_settings(tmp_path: Path, clean_env: None) -> Callable[..., Settings]:
    """Factory for :class:`Settings` with files under ``tmp_path`` and no waits."""

    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "crontab_file": str(tmp_path / "crontabs" / "watchdog"),
            "crontab_checksum_file": str(tmp_path / "watchdog_crontab.checksum"),
            "crond_start_grace": 0,
            "crond_crash_backoff": 0,
            "startup_connect_wait": 0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture()
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Fake container source
# ---------------------------------------------------------------------------


class FakeSource(ContainerSource):
    """In-memory container runtime.

    Containers are stored as ``id -> (name, labels)``.  Flip ``available``
    to simulate a listing failure and ``reachable`` to fail pings.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.containers: dict[str, tuple[str, dict[str, str]]] = {}
        self.available = True
        self.reachable = True
        self.restart_ok = True
        self.restarted: list[tuple[str, int]] = []
        self.list_calls = 0

    @property
    def endpoint(self) -> str:
        return "fake://runtime"

    def add(
        self,
        container_id: str,
        name: str,
        *,
        schedule: str | None = None,
        timeout: str | None = None,
        project: str | None = None,
        eligible: bool = True,
    ) -> None:
        labels: dict[str, str] = {}
        if eligible:
            labels[self._settings.cron_container_label] = "true"
        if schedule is not None:
            labels[self._settings.cron_schedule_label] = schedule
        if timeout is not None:
            labels[self._settings.cron_timeout_label] = timeout
        if project is not None:
            labels[COMPOSE_PROJECT_LABEL] = project
        self.containers[container_id] = (name, labels)

    def remove(self, container_id: str) -> None:
        del self.containers[container_id]

    def ping(self) -> bool:
        return self.reachable

    def list_eligible(self, project: str | None = None) -> list[ContainerRef]:
        self.list_calls += 1
        if not self.available:
            raise RuntimeUnavailableError(self.endpoint, "connection refused")
        refs = []
        for container_id, (name, labels) in self.containers.items():
            if labels.get(self._settings.cron_container_label) != "true":
                continue
            if project and labels.get(COMPOSE_PROJECT_LABEL) != project:
                continue
            refs.append(ContainerRef(id=container_id, name=name))
        return refs

    def read_label(self, container_id: str, label: str) -> str | None:
        entry = self.containers.get(container_id)
        return entry[1].get(label) if entry else None

    def restart(self, target: str, timeout: int) -> bool:
        self.restarted.append((target, timeout))
        return self.restart_ok


@pytest.fixture()
def fake_source(settings: Settings) -> FakeSource:
    return FakeSource(settings)


# ---------------------------------------------------------------------------
# Fake crond
# ---------------------------------------------------------------------------

_pids = itertools.count(1000)


class FakeProcess:
    """Stands in for :class:`asyncio.subprocess.Process`.

    ``exit_on_terminate=False`` simulates a daemon that ignores SIGTERM.
    """

    def __init__(self, *, exit_on_terminate: bool = True, returncode: int | None = None) -> None:
        self.pid = next(_pids)
        self.returncode = returncode
        self.exit_on_terminate = exit_on_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()
        if returncode is not None:
            self._exited.set()

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeLauncher:
    """Records launches and hands out :class:`FakeProcess` handles.

    Queue behaviours in ``plan``: ``"ok"`` (default), ``"dies"`` (exits
    during the start grace), ``"fail"`` (executable not found) or
    ``"stubborn"`` (ignores SIGTERM).
    """

    def __init__(self) -> None:
        self.argvs: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.plan: list[str] = []

    def make_process(self, **kwargs: object) -> FakeProcess:
        return FakeProcess(**kwargs)  # type: ignore[arg-type]

    @property
    def live(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]

    async def __call__(self, argv: Sequence[str]) -> FakeProcess:
        self.argvs.append(list(argv))
        behaviour = self.plan.pop(0) if self.plan else "ok"
        if behaviour == "fail":
            raise ProcessStartError(ProcessRole.JOB_DAEMON, f"{argv[0]}: not found")
        if behaviour == "dies":
            process = FakeProcess(returncode=1)
        else:
            process = FakeProcess(exit_on_terminate=behaviour != "stubborn")
        self.processes.append(process)
        return process


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()

