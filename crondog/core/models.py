"""Crondog core domain models.

Value types shared by the runtime adapter, the schedule compiler, the
synchronizer and the supervisors.  Containers are re-discovered on every
cycle, so none of these models carries identity across cycles.

Typical usage::

    from crondog.core.models import MonitoredContainer

    container = MonitoredContainer(
        id="c1",
        name="web",
        schedule="0 2 * * *",
        stop_timeout=10,
    )
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "ContainerRef",
    "MonitoredContainer",
    "ContainerSnapshot",
    "JobEntry",
    "CompiledSchedule",
    "ScheduleSnapshot",
    "ReconcileResult",
    "JobRunnerState",
    "ProcessRole",
    "fingerprint_text",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ReconcileResult(StrEnum):
    """Outcome of one synchronizer pass."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    ERROR = "error"


class JobRunnerState(StrEnum):
    """Lifecycle states of the job-execution daemon.

    ::

        ABSENT ──start()──▶ STARTING ──is alive──▶ RUNNING
          ▲                    │                     │  │
          │                    │ exits early         │  │ handle dead
          │                    ▼                     │  ▼
          │                 CRASHED ◀────────────────┼──┘
          │                    │ backoff, start()    │
          │                    ▼                     │
          │                 STARTING                 │
          └─────────── request_restart() ────────────┘
    """

    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


class ProcessRole(StrEnum):
    """Roles of the two supervised background activities."""

    JOB_DAEMON = "job-daemon"
    DISCOVERY_LOOP = "discovery-loop"


# ---------------------------------------------------------------------------
# Runtime snapshot
# ---------------------------------------------------------------------------


class ContainerRef(BaseModel):
    """A running container that carries the eligibility label."""

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, description="Runtime container ID.")
    name: str = Field(default="", description="Container name without leading slash.")

    @field_validator("name", mode="before")
    @classmethod
    def _strip_leading_slash(cls, v: object) -> object:
        # The engine API reports names as "/web".
        if isinstance(v, str):
            return v.lstrip("/")
        return v


class MonitoredContainer(BaseModel):
    """An eligible container with its resolved restart metadata.

    Attributes:
        id: Runtime container ID.
        name: Container display name.  May be empty for odd runtimes; the
            compiler then restarts by ID.
        schedule: Validated 5-field cron expression.
        stop_timeout: Seconds the runtime waits before killing the container.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    schedule: str = Field(..., min_length=1)
    stop_timeout: int = Field(..., ge=0)

    @property
    def target(self) -> str:
        """Reference passed to the restart command."""
        return self.name or self.id

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.name, self.id)


@dataclass(frozen=True)
class ContainerSnapshot:
    """Result of one discovery pass against the runtime.

    ``available=False`` means the runtime could not be reached, which is
    different from an empty ``containers`` tuple (nothing is eligible).
    """

    available: bool
    containers: tuple[MonitoredContainer, ...] = ()

    @classmethod
    def unavailable(cls) -> ContainerSnapshot:
        return cls(available=False)


# ---------------------------------------------------------------------------
# Compiled schedule
# ---------------------------------------------------------------------------


def fingerprint_text(text: str) -> str:
    """SHA-256 hex digest used to compare compiled and installed crontabs."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class JobEntry(BaseModel):
    """One rendered crontab job (comment line plus job line)."""

    model_config = {"frozen": True}

    schedule: str
    container_id: str | None = None
    container_name: str | None = None
    text: str

    @property
    def is_keep_alive(self) -> bool:
        return self.container_id is None


@dataclass(frozen=True)
class CompiledSchedule:
    """Ordered job entries and the crontab text they render to.

    Never empty: a compile with no containers carries exactly one keep-alive
    entry so ``crond`` always has a job to run.
    """

    entries: tuple[JobEntry, ...]
    text: str

    def __post_init__(self) -> None:
        if not self.entries:
            raise ValueError("CompiledSchedule requires at least one entry")

    @property
    def keep_alive(self) -> bool:
        return all(entry.is_keep_alive for entry in self.entries)

    @property
    def container_count(self) -> int:
        return sum(1 for entry in self.entries if not entry.is_keep_alive)

    @property
    def fingerprint(self) -> str:
        return fingerprint_text(self.text)


@dataclass(frozen=True)
class ScheduleSnapshot:
    """What is currently installed: the crontab's fingerprint and location."""

    fingerprint: str
    path: Path
