"""Crondog process entry-point.

Usage:
    python -m crondog [--log-level LEVEL] [--log-format FORMAT] [COMMAND]

Commands:
    run                      Supervise crond and the discovery loop (default).
    once                     Reconcile the crontab a single time and exit.
    render                   Print the crontab for the running containers.
    restart TARGET           Restart one container and exit.

Logging is configured before anything else so that every module obtains a
working logger on first use.  Configuration and startup failures exit with
status 1; a signal-driven shutdown exits with status 0.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable, Sequence

from crondog.core import configure_from_settings, configure_logging
from crondog.core.exceptions import ConfigError
from crondog.core.models import ReconcileResult
from crondog.core.settings import Settings, load_settings
from crondog.runtime.docker_source import DockerContainerSource
from crondog.runtime.respawn import restart_container

logger = logging.getLogger("crondog")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crondog",
        description="Restart Docker containers on cron schedules read from their labels.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("run", help="Supervise crond and the discovery loop (default).")
    sub.add_parser("once", help="Reconcile the crontab once and exit.")
    sub.add_parser("render", help="Print the crontab for the running containers.")
    restart = sub.add_parser("restart", help="Restart one container and exit.")
    restart.add_argument("target", help="Container name or id.")
    restart.add_argument(
        "-t",
        "--timeout",
        type=int,
        default=None,
        help="Stop timeout in seconds (default: CRON_DEFAULT_STOP_TIMEOUT).",
    )
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    # Lazy import keeps one-shot commands free of the supervision stack.
    from crondog.supervisor.lifecycle import LifecycleController  # noqa: PLC0415
    from crondog.supervisor.preflight import run_preflight  # noqa: PLC0415

    with DockerContainerSource(settings) as source:
        try:
            run_preflight(settings, source)
            controller = LifecycleController.from_settings(settings, source)
            asyncio.run(controller.run())
        except ConfigError as exc:
            logger.critical("Startup failed: %s", exc)
            return 1
        except KeyboardInterrupt:
            logger.info("Interrupted, exiting.")
    return 0


def _cmd_once(args: argparse.Namespace, settings: Settings) -> int:
    from crondog.schedule.synchronizer import ScheduleSynchronizer  # noqa: PLC0415
    from crondog.supervisor.preflight import check_connectivity  # noqa: PLC0415

    with DockerContainerSource(settings) as source:
        try:
            check_connectivity(settings, source)
        except ConfigError as exc:
            logger.critical("%s", exc)
            return 1
        result = asyncio.run(ScheduleSynchronizer(settings, source).reconcile())

    logger.info("Reconcile finished: %s", result)
    return 1 if result is ReconcileResult.ERROR else 0


def _cmd_render(args: argparse.Namespace, settings: Settings) -> int:
    from crondog.schedule.compiler import compile_schedule  # noqa: PLC0415

    with DockerContainerSource(settings) as source:
        snapshot = source.snapshot(settings.compose_project)

    if not snapshot.available:
        logger.error("Cannot connect to Docker at %s.", settings.docker_sock)
        return 1

    sys.stdout.write(compile_schedule(snapshot.containers, settings).text)
    return 0


def _cmd_restart(args: argparse.Namespace, settings: Settings) -> int:
    timeout = args.timeout if args.timeout is not None else settings.cron_default_stop_timeout
    with DockerContainerSource(settings) as source:
        return restart_container(source, args.target, timeout)


_COMMANDS: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
    "run": _cmd_run,
    "once": _cmd_once,
    "render": _cmd_render,
    "restart": _cmd_restart,
}


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    # Bootstrap logging so a settings failure is still reported.
    try:
        configure_logging(level=args.log_level or "INFO", fmt=args.log_format or "text")
    except ValueError as exc:
        print(f"crondog: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)

    configure_from_settings(settings, level=args.log_level, fmt=args.log_format)

    command = args.command or "run"
    sys.exit(_COMMANDS[command](args, settings))


if __name__ == "__main__":
    main()
