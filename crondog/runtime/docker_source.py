"""Docker Engine adapter for :class:`~crondog.runtime.base.ContainerSource`.

Talks to the engine through the ``docker`` SDK.  The endpoint comes from
``DOCKER_SOCK``:

* ``/var/run/docker.sock`` (any plain path) → ``unix:///var/run/docker.sock``
* ``tcp://host:2375``                       → plain TCP
* ``tcps://host:2376``                      → TCP with TLS, certificates from
  ``DOCKER_CERT_PATH`` (``ca.pem``, ``cert.pem``, ``key.pem``)

The SDK client is created lazily and cached.  Any connection failure drops
the cached client so the next call reconnects; a restarted engine is picked
up without restarting Crondog.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import docker
from docker.errors import DockerException, NotFound
from docker.tls import TLSConfig

from crondog.core.exceptions import RuntimeUnavailableError
from crondog.core.models import ContainerRef
from crondog.core.settings import Settings
from crondog.runtime.base import ContainerSource

__all__ = ["DockerContainerSource", "COMPOSE_PROJECT_LABEL", "docker_base_url"]

logger = logging.getLogger(__name__)

#: Label set by docker compose on every service container.
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"

# requests' ConnectionError derives from OSError, so this pair covers the
# SDK's own errors and raw transport failures on the socket.
_RUNTIME_ERRORS = (DockerException, OSError)


def docker_base_url(docker_sock: str) -> tuple[str, bool]:
    """Translate ``DOCKER_SOCK`` into an SDK base URL.

    Returns:
        ``(base_url, use_tls)``.
    """
    if docker_sock.startswith("tcp://"):
        return docker_sock, False
    if docker_sock.startswith("tcps://"):
        return "tcp://" + docker_sock[len("tcps://"):], True
    if docker_sock.startswith("unix://"):
        return docker_sock, False
    return f"unix://{docker_sock}", False


class DockerContainerSource(ContainerSource):
    """Container source backed by the Docker Engine API.

    Args:
        settings: Active settings (endpoint, labels, defaults).
        client: Pre-built :class:`docker.DockerClient`.  Tests inject a mock
            here; production code lets the source build its own.
    """

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        super().__init__(settings)
        self._base_url, self._tls = docker_base_url(settings.docker_sock)
        self._client = client
        self._owns_client = client is None
        # Labels captured by the last list_eligible() call, keyed by ID.
        self._labels: dict[str, dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Client management
    # ------------------------------------------------------------------

    @property
    def endpoint(self) -> str:
        return self._base_url

    def _tls_config(self) -> TLSConfig:
        cert_path = self._settings.docker_cert_path
        return TLSConfig(
            client_cert=(
                os.path.join(cert_path, "cert.pem"),
                os.path.join(cert_path, "key.pem"),
            ),
            ca_cert=os.path.join(cert_path, "ca.pem"),
            verify=True,
        )

    def _get_client(self) -> Any:
        """Return the cached SDK client, creating it on first use.

        Raises:
            RuntimeUnavailableError: The engine could not be contacted.
        """
        if self._client is None:
            try:
                self._client = docker.DockerClient(
                    base_url=self._base_url,
                    tls=self._tls_config() if self._tls else False,
                )
            except _RUNTIME_ERRORS as exc:
                raise RuntimeUnavailableError(self._base_url, str(exc)) from exc
            logger.debug("Docker client connected to %s.", self._base_url)
        return self._client

    def _drop_client(self) -> None:
        if self._client is not None and self._owns_client:
            try:
                self._client.close()
            except _RUNTIME_ERRORS:
                logger.debug("Ignoring error while closing docker client.", exc_info=True)
            self._client = None

    def close(self) -> None:
        self._drop_client()
        self._labels.clear()

    # ------------------------------------------------------------------
    # ContainerSource primitives
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            return bool(self._get_client().ping())
        except RuntimeUnavailableError as exc:
            logger.debug("Docker ping failed: %s", exc)
        except _RUNTIME_ERRORS as exc:
            logger.debug("Docker ping failed: %s", exc)
            self._drop_client()
        return False

    def list_eligible(self, project: str | None = None) -> list[ContainerRef]:
        label_filters = [f"{self._settings.cron_container_label}=true"]
        if project:
            label_filters.append(f"{COMPOSE_PROJECT_LABEL}={project}")

        client = self._get_client()
        try:
            containers = client.containers.list(filters={"label": label_filters})
        except _RUNTIME_ERRORS as exc:
            self._drop_client()
            raise RuntimeUnavailableError(self._base_url, f"container listing failed: {exc}") from exc

        self._labels = {}
        refs: list[ContainerRef] = []
        for container in containers:
            ref = ContainerRef(id=container.short_id, name=container.name or "")
            self._labels[ref.id] = dict(container.labels or {})
            refs.append(ref)
        return refs

    def read_label(self, container_id: str, label: str) -> str | None:
        labels = self._labels.get(container_id)
        if labels is None:
            try:
                labels = self._get_client().containers.get(container_id).labels or {}
            except (RuntimeUnavailableError, *_RUNTIME_ERRORS) as exc:
                logger.debug("Cannot read label %s of %s: %s", label, container_id, exc)
                return None
        return labels.get(label)

    def restart(self, target: str, timeout: int) -> bool:
        try:
            container = self._get_client().containers.get(target)
            container.restart(timeout=timeout)
        except NotFound:
            logger.error("Container %s not found.", target)
            return False
        except (RuntimeUnavailableError, *_RUNTIME_ERRORS) as exc:
            logger.error("Restart of %s failed: %s", target, exc)
            return False
        return True
