"""Selects the containers that run PHP-FPM."""

from __future__ import annotations

import logging

from ..config import ScannerConfig
from .base import ScanTarget, SocketDescriptor
from .directory import ContainerDirectory, ContainerInfo

logger = logging.getLogger(__name__)


def is_fpm_container(container: ContainerInfo, process_name: str) -> bool:
    """True if the image name or command line mentions *process_name*.

    The match is case-insensitive.
    """
    needle = process_name.lower()
    if needle in container.image.lower():
        return True
    return any(needle in part.lower() for part in container.command)


class ContainerScanner:
    """Turns the container directory listing into scan targets.

    A container whose socket cannot be resolved is still a target; that
    surfaces as ``SocketNotFound`` at collection time.
    """

    def __init__(self, directory: ContainerDirectory, config: ScannerConfig) -> None:
        self._directory = directory
        self._config = config
        self._default_socket = SocketDescriptor.parse(config.socket)

    def _socket_for(self, container: ContainerInfo) -> SocketDescriptor:
        override = container.labels.get(self._config.socket_label) if self._config.socket_label else None
        if override:
            try:
                return SocketDescriptor.parse(override)
            except ValueError:
                logger.warning(
                    "Ignoring invalid %s label %r on %s",
                    self._config.socket_label, override, container.id[:12],
                )
        return self._default_socket

    def scan(self) -> list[ScanTarget]:
        """List the current targets. Raises ``DirectoryUnavailable``."""
        targets: list[ScanTarget] = []
        seen: set[str] = set()
        for container in self._directory.list_containers():
            if container.id in seen:
                continue
            if not is_fpm_container(container, self._config.process_name):
                continue
            if container.pid <= 0:
                logger.debug("Container %s has no running entry process", container.id[:12])
                continue
            seen.add(container.id)
            targets.append(ScanTarget(
                container_id=container.id,
                entry_pid=container.pid,
                socket=self._socket_for(container),
                name=container.name,
            ))
        logger.debug("Scan found %d PHP-FPM container(s)", len(targets))
        return targets
