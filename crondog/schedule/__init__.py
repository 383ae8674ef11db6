"""Crontab compilation and idempotent installation."""

from crondog.schedule.compiler import compile_schedule, render_entry, render_keep_alive
from crondog.schedule.synchronizer import ScheduleSynchronizer, install_crontab

__all__ = [
    "compile_schedule",
    "install_crontab",
    "render_entry",
    "render_keep_alive",
    "ScheduleSynchronizer",
]
