"""Unit tests for the lifecycle controller, startup checks and the CLI.

Covers:
- :class:`~crondog.supervisor.lifecycle.LifecycleController` startup order,
  tick-driven self-healing, restart-on-change, shutdown order and the
  fingerprint record removal.
- :mod:`crondog.supervisor.preflight` checks, including tenacity retries.
- ``crondog`` CLI commands in :mod:`crondog.__main__`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from crondog.__main__ import main
from crondog.core import JsonFormatter, configure_logging
from crondog.core.exceptions import ConfigError, StartupError
from crondog.core.models import JobRunnerState, ReconcileResult
from crondog.core.settings import Settings
from crondog.schedule.synchronizer import ScheduleSynchronizer
from crondog.supervisor.discovery import DiscoveryLoopSupervisor
from crondog.supervisor.job_runner import JobRunnerSupervisor
from crondog.supervisor.lifecycle import LifecycleController
from crondog.supervisor.preflight import (
    check_binaries,
    check_connectivity,
    check_docker_socket,
    check_writable_paths,
    run_preflight,
)

# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


def _build(settings: Settings, source: Any, launcher: Any) -> LifecycleController:
    sync = ScheduleSynchronizer(settings, source, installer=MagicMock(return_value=True))
    runner = JobRunnerSupervisor(settings, launcher=launcher)
    discovery = DiscoveryLoopSupervisor(settings, source, sync)
    return LifecycleController(settings, sync, runner, discovery)


@pytest.fixture()
def controller(settings: Settings, fake_source: Any, launcher: Any) -> LifecycleController:
    return _build(settings, fake_source, launcher)


async def _wait_for(predicate: Any, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# LifecycleController
# ---------------------------------------------------------------------------


class TestLifecycleStart:
    async def test_start_installs_and_launches_both(
        self, controller: LifecycleController, settings: Settings, fake_source: Any, launcher: Any
    ) -> None:
        fake_source.add("c1", "web")

        await controller.start()

        assert "web" in settings.crontab_path.read_text()
        assert controller.job_runner.state is JobRunnerState.RUNNING
        assert controller.discovery.is_alive()
        assert controller.state.job_runner_handle is launcher.processes[0]
        assert controller.state.discovery_handle is controller.discovery.handle
        # The initial install happens before crond exists: no retire needed.
        assert not launcher.processes[0].terminated

        await controller.shutdown()

    async def test_start_with_no_containers_installs_keep_alive(
        self, controller: LifecycleController, settings: Settings
    ) -> None:
        await controller.start()
        assert "No containers to monitor" in settings.crontab_path.read_text()
        await controller.shutdown()

    async def test_initial_install_failure_is_fatal(
        self, controller: LifecycleController, fake_source: Any, launcher: Any
    ) -> None:
        fake_source.available = False

        with pytest.raises(StartupError):
            await controller.start()

        assert launcher.argvs == []
        assert controller.discovery.handle is None

    async def test_daemon_start_failure_is_not_fatal(
        self, controller: LifecycleController, launcher: Any
    ) -> None:
        launcher.plan = ["fail"]

        await controller.start()

        assert controller.job_runner.state is JobRunnerState.CRASHED
        assert controller.discovery.is_alive()

        await controller.tick()
        assert controller.job_runner.state is JobRunnerState.RUNNING
        await controller.shutdown()


class TestLifecycleTick:
    async def test_tick_relaunches_crashed_daemon(
        self, controller: LifecycleController, launcher: Any
    ) -> None:
        await controller.start()
        launcher.processes[0].exit(137)

        await controller.tick()

        assert controller.job_runner.state is JobRunnerState.RUNNING
        assert controller.state.job_runner_handle is launcher.processes[1]
        await controller.shutdown()

    async def test_tick_restarts_dead_discovery_loop(self, controller: LifecycleController) -> None:
        await controller.start()
        dead = controller.discovery.handle
        assert dead is not None
        dead.cancel()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await controller.tick()

        assert controller.discovery.is_alive()
        assert controller.state.discovery_handle is not dead
        await controller.shutdown()

    async def test_change_restarts_daemon_on_next_tick(
        self, controller: LifecycleController, fake_source: Any, launcher: Any
    ) -> None:
        await controller.start()
        # Drive cycles by hand; the background loop would race this test.
        await controller.discovery.stop()
        first = launcher.processes[0]

        fake_source.add("c1", "web")
        assert await controller.discovery.run_cycle() is ReconcileResult.CHANGED

        assert first.terminated
        assert controller.job_runner.handle is None
        assert controller.job_runner.state is JobRunnerState.ABSENT

        await controller.tick()

        assert controller.job_runner.state is JobRunnerState.RUNNING
        assert launcher.live == [launcher.processes[1]]
        await controller.shutdown()


class TestLifecycleShutdown:
    async def test_shutdown_order_and_cleanup(
        self,
        controller: LifecycleController,
        settings: Settings,
        launcher: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await controller.start()
        order: list[tuple[str, float | None]] = []
        stop_discovery = controller.discovery.stop
        stop_runner = controller.job_runner.stop

        async def _discovery_stop(timeout: float | None = None) -> bool:
            order.append(("discovery", timeout))
            return await stop_discovery(timeout)

        async def _runner_stop(timeout: float | None = None) -> bool:
            order.append(("job-runner", timeout))
            return await stop_runner(timeout)

        monkeypatch.setattr(controller.discovery, "stop", _discovery_stop)
        monkeypatch.setattr(controller.job_runner, "stop", _runner_stop)

        await controller.shutdown()

        assert order == [("discovery", 5), ("job-runner", 10)]
        assert launcher.live == []
        assert controller.state.job_runner_handle is None
        assert controller.state.discovery_handle is None
        assert not settings.checksum_path.exists()
        assert settings.crontab_path.exists()

    async def test_shutdown_is_idempotent(self, controller: LifecycleController) -> None:
        await controller.start()
        await controller.shutdown()
        await controller.shutdown()
        assert controller.state.shutdown_complete

    async def test_next_start_after_shutdown_reinstalls(
        self, settings: Settings, fake_source: Any, launcher: Any
    ) -> None:
        fake_source.add("c1", "web")
        first = _build(settings, fake_source, launcher)
        await first.start()
        await first.shutdown()

        second = _build(settings, fake_source, launcher)
        assert await second._synchronizer.reconcile() is ReconcileResult.CHANGED

    def test_request_shutdown_is_idempotent(self, controller: LifecycleController) -> None:
        controller.request_shutdown("SIGTERM")
        controller.request_shutdown("SIGINT")
        assert controller.state.shutdown_requested
        assert controller.state.signal_name == "SIGTERM"
        assert controller.job_runner.halted


class TestLifecycleRun:
    async def test_run_until_shutdown_requested(
        self, make_settings: Any, fake_source: Any, launcher: Any
    ) -> None:
        settings = make_settings(cron_monitor_interval=0.2, supervisor_tick_interval=0.02)
        controller = _build(settings, fake_source, launcher)

        task = asyncio.create_task(controller.run())
        await _wait_for(lambda: controller.job_runner.state is JobRunnerState.RUNNING)
        launcher.processes[0].exit(1)
        await _wait_for(lambda: len(launcher.processes) == 2)

        controller.request_shutdown("test")
        await asyncio.wait_for(task, timeout=5)

        assert controller.state.shutdown_complete
        assert launcher.live == []
        assert not settings.checksum_path.exists()

    async def test_shutdown_during_crash_backoff_does_not_relaunch(
        self, make_settings: Any, fake_source: Any, launcher: Any
    ) -> None:
        settings = make_settings(
            cron_monitor_interval=1, supervisor_tick_interval=0.02, crond_crash_backoff=30
        )
        controller = _build(settings, fake_source, launcher)
        loop = asyncio.get_running_loop()

        task = asyncio.create_task(controller.run())
        await _wait_for(lambda: controller.job_runner.state is JobRunnerState.RUNNING)
        launcher.processes[0].exit(1)
        await _wait_for(lambda: controller.job_runner.state is JobRunnerState.CRASHED)

        started = loop.time()
        controller.request_shutdown("SIGTERM")
        await asyncio.wait_for(task, timeout=5)

        assert loop.time() - started < 1
        assert len(launcher.processes) == 1
        assert launcher.live == []
        assert controller.state.shutdown_complete

    async def test_sigterm_triggers_graceful_shutdown(
        self, controller: LifecycleController, launcher: Any
    ) -> None:
        task = asyncio.create_task(controller.run())
        await _wait_for(lambda: controller.discovery.is_alive())

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, timeout=5)

        assert controller.state.signal_name == "SIGTERM"
        assert launcher.live == []

    async def test_run_propagates_startup_error(
        self, controller: LifecycleController, fake_source: Any
    ) -> None:
        fake_source.available = False
        with pytest.raises(StartupError):
            await controller.run()
        assert controller.state.shutdown_complete


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


@pytest.fixture()
def unix_socket(tmp_path: Path) -> Iterator[Path]:
    path = tmp_path / "docker.sock"
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(path))
    try:
        yield path
    finally:
        sock.close()


class TestPreflight:
    def test_connectivity_retries_then_succeeds(self, make_settings: Any) -> None:
        settings = make_settings(startup_connect_attempts=3, startup_connect_wait=2)
        source = MagicMock(endpoint="unix:///var/run/docker.sock")
        source.ping.side_effect = [False, False, True]
        sleeps: list[float] = []

        check_connectivity(settings, source, sleep=sleeps.append)

        assert source.ping.call_count == 3
        assert sleeps == [2, 2]

    def test_connectivity_gives_up(self, make_settings: Any) -> None:
        settings = make_settings(startup_connect_attempts=2)
        source = MagicMock(endpoint="tcp://docker:2375")
        source.ping.return_value = False

        with pytest.raises(ConfigError, match="Cannot connect to Docker daemon"):
            check_connectivity(settings, source, sleep=lambda _s: None)
        assert source.ping.call_count == 2

    def test_missing_crond_is_fatal(self, settings: Settings) -> None:
        with (
            patch("crondog.supervisor.preflight.shutil.which", return_value=None),
            pytest.raises(ConfigError, match="crond command not found"),
        ):
            check_binaries(settings)

    def test_missing_crontab_is_a_warning(self, settings: Settings) -> None:
        def _which(name: str) -> str | None:
            return "/usr/sbin/crond" if name == "crond" else None

        with patch("crondog.supervisor.preflight.shutil.which", side_effect=_which):
            check_binaries(settings)

    def test_writable_paths_created(self, settings: Settings) -> None:
        check_writable_paths(settings)
        assert settings.crontab_path.parent.is_dir()

    def test_uncreatable_crontab_dir_is_fatal(self, make_settings: Any, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        settings = make_settings(crontab_file=str(blocker / "watchdog"))

        with pytest.raises(ConfigError, match="Cannot create crontab directory"):
            check_writable_paths(settings)

    def test_unwritable_dir_is_fatal(self, settings: Settings) -> None:
        with (
            patch("crondog.supervisor.preflight.os.access", return_value=False),
            pytest.raises(ConfigError, match="not writable"),
        ):
            check_writable_paths(settings)

    def test_remote_endpoint_skips_socket_check(self, make_settings: Any) -> None:
        settings = make_settings(docker_sock="tcp://docker:2375")
        with patch("crondog.supervisor.preflight.os.stat") as stat_mock:
            check_docker_socket(settings)
        stat_mock.assert_not_called()

    def test_unreadable_socket_is_fatal(self, make_settings: Any, unix_socket: Path) -> None:
        settings = make_settings(docker_sock=str(unix_socket))
        with (
            patch("crondog.supervisor.preflight.os.geteuid", return_value=1000),
            patch("crondog.supervisor.preflight.os.access", return_value=False),
            pytest.raises(ConfigError, match="not readable"),
        ):
            check_docker_socket(settings)

    def test_socket_group_mismatch_is_a_warning(
        self, make_settings: Any, unix_socket: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        settings = make_settings(docker_sock=str(unix_socket))
        foreign_gid = unix_socket.stat().st_gid + 4242
        with (
            patch("crondog.supervisor.preflight.os.geteuid", return_value=1000),
            patch("crondog.supervisor.preflight.os.getegid", return_value=foreign_gid),
            patch("crondog.supervisor.preflight.os.getgroups", return_value=[foreign_gid]),
            patch("crondog.supervisor.preflight.os.access", return_value=True),
        ):
            check_docker_socket(settings)
        assert any("socket group" in r.getMessage() for r in caplog.records)

    def test_run_preflight_passes(self, make_settings: Any, fake_source: Any) -> None:
        settings = make_settings(docker_sock="tcp://docker:2375")
        with patch("crondog.supervisor.preflight.shutil.which", return_value="/usr/bin/x"):
            run_preflight(settings, fake_source)
        assert settings.crontab_path.parent.is_dir()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture()
def cli_env(clean_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    crontab = tmp_path / "crontabs" / "watchdog"
    monkeypatch.setenv("CRONTAB_FILE", str(crontab))
    monkeypatch.setenv("CRONTAB_CHECKSUM_FILE", str(tmp_path / "watchdog.checksum"))
    # Never touch the real user crontab from tests.
    monkeypatch.setattr("crondog.schedule.synchronizer.shutil.which", lambda _name: None)
    return crontab


@pytest.fixture()
def cli_source(fake_source: Any, monkeypatch: pytest.MonkeyPatch) -> Any:
    monkeypatch.setattr("crondog.__main__.DockerContainerSource", lambda _settings: fake_source)
    return fake_source


class TestCli:
    def test_render_prints_crontab(
        self, cli_env: Path, cli_source: Any, capsys: pytest.CaptureFixture[str]
    ) -> None:
        cli_source.add("c1", "web", schedule="0 2 * * *")

        with pytest.raises(SystemExit) as exc_info:
            main(["render"])

        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert "# Restart job for container: web (c1)" in out
        assert out.count("\n0 2 * * * ") == 1
        assert not cli_env.exists()

    def test_render_unreachable(self, cli_env: Path, cli_source: Any) -> None:
        cli_source.available = False
        with pytest.raises(SystemExit) as exc_info:
            main(["render"])
        assert exc_info.value.code == 1

    def test_once_installs(self, cli_env: Path, cli_source: Any) -> None:
        cli_source.add("c1", "web")
        with pytest.raises(SystemExit) as exc_info:
            main(["once"])
        assert exc_info.value.code == 0
        assert "web" in cli_env.read_text()

    def test_once_unreachable_fails(
        self, cli_env: Path, cli_source: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("STARTUP_CONNECT_ATTEMPTS", "1")
        cli_source.reachable = False
        with pytest.raises(SystemExit) as exc_info:
            main(["once"])
        assert exc_info.value.code == 1

    def test_restart_command(self, cli_env: Path, cli_source: Any) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["restart", "web", "--timeout", "7"])
        assert exc_info.value.code == 0
        assert cli_source.restarted == [("web", 7)]

    def test_restart_uses_default_timeout(self, cli_env: Path, cli_source: Any) -> None:
        cli_source.restart_ok = False
        with pytest.raises(SystemExit) as exc_info:
            main(["restart", "web"])
        assert exc_info.value.code == 1
        assert cli_source.restarted == [("web", 10)]

    def test_invalid_log_level(self, cli_env: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--log-level", "LOUD", "render"])
        assert exc_info.value.code == 1

    def test_invalid_configuration(self, cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CRON_DEFAULT_SCHEDULE", "0 2 * * * *")
        with pytest.raises(SystemExit) as exc_info:
            main(["render"])
        assert exc_info.value.code == 1

    def test_run_exits_1_when_preflight_fails(self, cli_env: Path, cli_source: Any) -> None:
        with (
            patch(
                "crondog.supervisor.preflight.run_preflight",
                side_effect=ConfigError("crond command not found"),
            ),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["run"])
        assert exc_info.value.code == 1

    def test_log_format_from_environment(
        self, cli_env: Path, cli_source: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("LOG_FORMAT", "json")
        try:
            with pytest.raises(SystemExit) as exc_info:
                main(["render"])
            root = logging.getLogger()
            assert exc_info.value.code == 0
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
        finally:
            configure_logging(level="DEBUG", fmt="text", force=True)
