"""Supervision of the job daemon and the discovery loop."""

from crondog.supervisor.discovery import DiscoveryLoopSupervisor
from crondog.supervisor.job_runner import JobRunnerSupervisor
from crondog.supervisor.lifecycle import LifecycleController, LifecycleState
from crondog.supervisor.preflight import run_preflight
from crondog.supervisor.process import ProcessHandle, stop_process_gracefully

__all__ = [
    "DiscoveryLoopSupervisor",
    "JobRunnerSupervisor",
    "LifecycleController",
    "LifecycleState",
    "ProcessHandle",
    "run_preflight",
    "stop_process_gracefully",
]
