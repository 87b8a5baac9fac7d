"""Container runtime discovery."""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class DirectoryUnavailable(Exception):
    """The container runtime could not be reached at all."""


@dataclass(frozen=True)
class ContainerInfo:
    """A running container as reported by the runtime."""

    id: str
    image: str
    command: tuple[str, ...] = ()
    pid: int = 0
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)


class ContainerDirectory(abc.ABC):
    """Abstract source of running containers."""

    @abc.abstractmethod
    def list_containers(self) -> list[ContainerInfo]:
        """Return the running containers.

        Raises :class:`DirectoryUnavailable` when the runtime is unreachable.
        """


def container_from_attrs(attrs: dict[str, Any]) -> ContainerInfo:
    """Build a :class:`ContainerInfo` from ``docker inspect`` attributes."""
    config = attrs.get("Config") or {}
    state = attrs.get("State") or {}

    # Path/Args is what the runtime actually started; Entrypoint/Cmd is the
    # declared fallback for runtimes that leave them empty.
    command: list[str] = []
    if attrs.get("Path"):
        command.append(attrs["Path"])
        command.extend(attrs.get("Args") or [])
    else:
        command.extend(config.get("Entrypoint") or [])
        command.extend(config.get("Cmd") or [])

    return ContainerInfo(
        id=attrs.get("Id", ""),
        image=config.get("Image") or attrs.get("Image", ""),
        command=tuple(str(part) for part in command),
        pid=int(state.get("Pid") or 0),
        name=(attrs.get("Name") or "").lstrip("/"),
        labels=dict(config.get("Labels") or {}),
    )


class DockerDirectory(ContainerDirectory):
    """Lists running containers through the Docker Engine API.

    The client is created on first use so that a daemon that is down at
    startup fails a cycle instead of the process.
    """

    def __init__(self, base_url: str | None = None, timeout: float = 10.0) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._client: Any = None
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        import docker

        with self._lock:
            if self._client is None:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url, timeout=int(self._timeout))
                else:
                    self._client = docker.from_env(timeout=int(self._timeout))
            return self._client

    def list_containers(self) -> list[ContainerInfo]:
        import docker.errors
        import requests.exceptions

        try:
            client = self._get_client()
            containers = client.containers.list(ignore_removed=True)
        except (docker.errors.DockerException, requests.exceptions.RequestException) as exc:
            with self._lock:
                self._client = None
            raise DirectoryUnavailable(str(exc)) from exc

        infos = []
        for container in containers:
            try:
                infos.append(container_from_attrs(container.attrs))
            except (TypeError, ValueError):
                logger.warning("Skipping container with unreadable attributes: %s", container.id)
        return infos
