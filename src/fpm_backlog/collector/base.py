"""Data types shared by the scanner, reader and collector."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class SocketKind(str, enum.Enum):
    UNIX = "unix"
    TCP = "tcp"


@dataclass(frozen=True)
class SocketDescriptor:
    """The PHP-FPM listening socket: a unix socket path or a tcp port."""

    kind: SocketKind
    address: str

    @classmethod
    def parse(cls, value: str) -> SocketDescriptor:
        """Parse ``unix:/path``, ``/path``, ``tcp:9000``, ``127.0.0.1:9000`` or ``9000``."""
        text = value.strip()
        scheme, sep, rest = text.partition(":")
        if sep and scheme in ("unix", "tcp"):
            kind, address = SocketKind(scheme), rest.strip()
        elif text.startswith("/"):
            kind, address = SocketKind.UNIX, text
        else:
            kind, address = SocketKind.TCP, text

        if kind is SocketKind.UNIX:
            if not address.startswith("/"):
                raise ValueError(f"unix socket path must be absolute: {value!r}")
        else:
            # php-fpm "listen = 127.0.0.1:9000" style; only the port matters
            address = address.rsplit(":", 1)[-1]
            if not address.isdigit() or not 0 < int(address) < 65536:
                raise ValueError(f"invalid tcp port: {value!r}")
        return cls(kind, address)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.address}"


@dataclass(frozen=True)
class ScanTarget:
    """One container to probe during the current cycle."""

    container_id: str
    entry_pid: int
    socket: SocketDescriptor
    name: str = ""

    def __post_init__(self) -> None:
        if self.entry_pid <= 0:
            raise ValueError(f"entry_pid must be positive, got {self.entry_pid}")

    @property
    def label(self) -> str:
        """Short human-readable identifier for logs."""
        short = self.container_id[:12]
        return f"{self.name} ({short})" if self.name else short


class ErrorKind(str, enum.Enum):
    """Why a single target produced no sample."""

    PROCESS_VANISHED = "ProcessVanished"
    NAMESPACE_ENTRY_DENIED = "NamespaceEntryDenied"
    SOCKET_NOT_FOUND = "SocketNotFound"
    PROBE_TIMEOUT = "ProbeTimeout"
    UNKNOWN = "Unknown"


class ProbeError(Exception):
    """A target-level failure with its classification."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


@dataclass(frozen=True)
class QueueSample:
    """Queue depths read for one target."""

    target: ScanTarget
    receive_queue: int
    send_queue: int
    collected_at: float

    def __post_init__(self) -> None:
        if self.receive_queue < 0 or self.send_queue < 0:
            raise ValueError("queue lengths must not be negative")


@dataclass(frozen=True)
class CollectionError:
    """Outcome of a target that could not be read."""

    target: ScanTarget
    kind: ErrorKind
    detail: str = ""


@dataclass(frozen=True)
class CycleResult:
    """Everything one measurement cycle produced."""

    samples: tuple[QueueSample, ...]
    errors: tuple[CollectionError, ...]
    started_at: float
    duration: float

    @property
    def target_count(self) -> int:
        return len(self.samples) + len(self.errors)

    def error_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for err in self.errors:
            counts[err.kind.value] = counts.get(err.kind.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain dictionaries."""
        return {
            "started_at": self.started_at,
            "duration": self.duration,
            "samples": [
                {
                    "container_id": s.target.container_id,
                    "name": s.target.name,
                    "socket": str(s.target.socket),
                    "receive_queue": s.receive_queue,
                    "send_queue": s.send_queue,
                    "collected_at": s.collected_at,
                }
                for s in self.samples
            ],
            "errors": [
                {
                    "container_id": e.target.container_id,
                    "name": e.target.name,
                    "kind": e.kind.value,
                    "detail": e.detail,
                }
                for e in self.errors
            ],
        }
