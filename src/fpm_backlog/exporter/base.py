"""Base interface for metrics backend clients."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Any, Sequence


class Unit(str, enum.Enum):
    COUNT = "Count"


class Resolution(str, enum.Enum):
    STANDARD = "Standard"
    HIGH = "HighResolution"


@dataclass(frozen=True)
class MetricRecord:
    """A single timestamped metric data point."""

    name: str
    dimensions: dict[str, str]
    value: float
    timestamp: float
    unit: Unit = Unit.COUNT
    resolution: Resolution = Resolution.HIGH

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "dimensions": dict(self.dimensions),
            "value": self.value,
            "unit": self.unit.value,
            "timestamp": self.timestamp,
            "resolution": self.resolution.value,
        }


class FailureKind(str, enum.Enum):
    """Classification of a rejected batch submission."""

    THROTTLED = "Throttled"
    TRANSIENT = "Transient"
    AUTH_REJECTED = "AuthRejected"
    MALFORMED_REQUEST = "MalformedRequest"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.THROTTLED, FailureKind.TRANSIENT)


class SubmitError(Exception):
    """A batch submission failed."""

    def __init__(self, kind: FailureKind, message: str = "") -> None:
        super().__init__(f"{kind.value}: {message}" if message else kind.value)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class BaseExporter(abc.ABC):
    """Abstract metrics backend client.

    Implementations are created once at startup and may be called from the
    scheduler's cycle thread only; they hold no per-cycle state.
    """

    #: Largest number of records accepted by one :meth:`submit` call.
    max_batch_size: int = 1000

    @abc.abstractmethod
    def submit(self, records: Sequence[MetricRecord]) -> None:
        """Send one batch. Raises :class:`SubmitError` on failure."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Flush and release resources."""
