"""Container source contract.

A container source answers four questions about one runtime endpoint:
is it reachable, which running containers opted into scheduled restarts,
what does a given label say, and can this container be restarted.  Every
adapter must subclass :class:`ContainerSource` and implement those four
primitives; schedule/timeout resolution and whole-snapshot discovery are
shared here so every adapter applies the same defaulting rules.

Design decisions
----------------
* **Abstract base class** rather than a ``Protocol``: the defaulting logic
  (:meth:`resolve_schedule`, :meth:`resolve_timeout`) and the
  :meth:`snapshot` template method are shared, not re-implemented.
* **Synchronous API**: the docker SDK is blocking.  Async callers wrap
  :meth:`snapshot` and :meth:`ping` in :func:`asyncio.to_thread`.
* **Unavailable is a value, not an exception** for callers of
  :meth:`snapshot`: the synchronizer must tell "nothing eligible" apart from
  "runtime unreachable" without a try/except at every call site.

Typical usage::

    from crondog.runtime.docker_source import DockerContainerSource

    with DockerContainerSource(settings) as source:
        snap = source.snapshot(settings.compose_project)
        if not snap.available:
            ...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from types import TracebackType

from crondog.core import events
from crondog.core.cron import validate_cron_expression
from crondog.core.exceptions import RuntimeUnavailableError
from crondog.core.models import ContainerRef, ContainerSnapshot, MonitoredContainer
from crondog.core.settings import Settings

__all__ = ["ContainerSource", "NO_VALUE"]

logger = logging.getLogger(__name__)

#: What ``docker inspect --format '{{ index .Config.Labels "x" }}'`` prints
#: for a missing label.  Treated like an absent label.
NO_VALUE = "<no value>"


class ContainerSource(ABC):
    """Abstract base for container runtime adapters.

    Args:
        settings: Provides the label names and the default schedule /
            stop timeout substituted for missing or invalid labels.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:  # noqa: B027
        """Release any connection held by this source.  No-op by default."""

    def __enter__(self) -> ContainerSource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Human-readable runtime endpoint, used in log lines."""

    @abstractmethod
    def ping(self) -> bool:
        """Return ``True`` when the runtime answers.  Must never raise."""

    @abstractmethod
    def list_eligible(self, project: str | None = None) -> list[ContainerRef]:
        """Return running containers whose eligibility label is ``true``.

        Args:
            project: When set, only containers of this compose project.

        Raises:
            RuntimeUnavailableError: The runtime could not be queried.
        """

    @abstractmethod
    def read_label(self, container_id: str, label: str) -> str | None:
        """Return the raw value of *label* on *container_id*, or ``None``.

        Implementations return ``None`` (rather than raising) when the
        container vanished or the runtime failed mid-cycle.
        """

    @abstractmethod
    def restart(self, target: str, timeout: int) -> bool:
        """Restart the container *target* (ID or name).

        Returns:
            ``True`` on success, ``False`` on any runtime error.
        """

    # ------------------------------------------------------------------
    # Shared resolution rules
    # ------------------------------------------------------------------

    def resolve_schedule(self, container_id: str) -> str:
        """Return the container's cron schedule, or the default schedule.

        Missing labels and the ``<no value>`` sentinel fall back silently;
        malformed expressions fall back with a warning.  Never raises.
        """
        default = self._settings.cron_default_schedule
        raw = self.read_label(container_id, self._settings.cron_schedule_label)

        if raw is None or not raw.strip() or raw.strip() == NO_VALUE:
            return default

        if not validate_cron_expression(raw):
            logger.warning(
                "Invalid cron schedule %r for container %s, using default %r.",
                raw,
                container_id,
                default,
                extra={"event": events.SCHEDULE_DEFAULTED},
            )
            return default

        return " ".join(raw.split())

    def resolve_timeout(self, container_id: str) -> int:
        """Return the container's stop timeout, or the default.  Never raises."""
        default = self._settings.cron_default_stop_timeout
        raw = self.read_label(container_id, self._settings.cron_timeout_label)

        if raw is None or not raw.strip() or raw.strip() == NO_VALUE:
            return default

        try:
            value = int(raw.strip())
        except ValueError:
            value = -1

        if value < 0:
            logger.warning(
                "Invalid stop timeout %r for container %s, using default %d s.",
                raw,
                container_id,
                default,
                extra={"event": events.SCHEDULE_DEFAULTED},
            )
            return default

        return value

    def snapshot(self, project: str | None = None) -> ContainerSnapshot:
        """Discover eligible containers and resolve their restart metadata.

        Returns:
            ``ContainerSnapshot(available=False)`` when the runtime is
            unreachable; otherwise every eligible container, in discovery
            order.
        """
        try:
            refs = self.list_eligible(project)
        except RuntimeUnavailableError as exc:
            logger.warning("Container discovery failed: %s", exc)
            return ContainerSnapshot.unavailable()

        containers = tuple(
            MonitoredContainer(
                id=ref.id,
                name=ref.name,
                schedule=self.resolve_schedule(ref.id),
                stop_timeout=self.resolve_timeout(ref.id),
            )
            for ref in refs
        )
        logger.debug("Discovered %d eligible container(s) on %s.", len(containers), self.endpoint)
        return ContainerSnapshot(available=True, containers=containers)
