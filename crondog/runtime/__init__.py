"""Container runtime adapters."""

from crondog.runtime.base import NO_VALUE, ContainerSource
from crondog.runtime.docker_source import DockerContainerSource
from crondog.runtime.respawn import restart_container

__all__ = ["ContainerSource", "DockerContainerSource", "NO_VALUE", "restart_container"]
