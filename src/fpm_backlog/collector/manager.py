"""Sample collector that fans one cycle's targets out to the reader."""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Sequence

from ..config import CollectorConfig
from .base import CollectionError, CycleResult, ErrorKind, ProbeError, QueueSample, ScanTarget
from .reader import SocketQueueReader

logger = logging.getLogger(__name__)


class SampleCollector:
    """Runs one measurement cycle over a list of targets.

    Reads run concurrently on a bounded thread pool. Each target ends up as
    exactly one sample or one :class:`CollectionError`; targets still pending
    at the deadline are recorded as ``ProbeTimeout`` and abandoned.
    """

    def __init__(
        self,
        reader: SocketQueueReader,
        config: CollectorConfig,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reader = reader
        self._config = config
        self._clock = clock
        self._monotonic = monotonic

    def collect(self, targets: Sequence[ScanTarget], deadline: float | None = None) -> CycleResult:
        """Read every target, giving up on stragglers after *deadline* seconds.

        *deadline* defaults to ``cycle_deadline_seconds`` from the config.
        """
        if deadline is None:
            deadline = self._config.cycle_deadline_seconds
        started_at = self._clock()
        start = self._monotonic()

        if not targets:
            return CycleResult(samples=(), errors=(), started_at=started_at, duration=0.0)

        outcomes: dict[int, QueueSample | CollectionError] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self._config.max_workers, len(targets)),
            thread_name_prefix="fpm-probe",
        )
        try:
            pending: dict[Future, int] = {
                executor.submit(self._reader.read, target): idx
                for idx, target in enumerate(targets)
            }
            while pending:
                remaining = deadline - (self._monotonic() - start)
                if remaining <= 0:
                    break
                done, _ = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    idx = pending.pop(future)
                    outcomes[idx] = self._resolve(targets[idx], future)

            for future, idx in pending.items():
                cancelled = future.cancel()
                outcomes[idx] = CollectionError(
                    target=targets[idx],
                    kind=ErrorKind.PROBE_TIMEOUT,
                    detail=f"cycle deadline of {deadline:.1f}s reached"
                    + ("" if cancelled else "; read abandoned"),
                )
            duration = self._monotonic() - start
        finally:
            # running reads cannot be interrupted; their results are discarded
            executor.shutdown(wait=False, cancel_futures=True)

        samples = []
        errors = []
        for idx in range(len(targets)):
            outcome = outcomes[idx]
            if isinstance(outcome, QueueSample):
                samples.append(outcome)
            else:
                errors.append(outcome)

        logger.debug(
            "Collected %d sample(s), %d error(s) in %.2fs",
            len(samples), len(errors), duration,
        )
        return CycleResult(
            samples=tuple(samples),
            errors=tuple(errors),
            started_at=started_at,
            duration=duration,
        )

    def _resolve(self, target: ScanTarget, future: Future) -> QueueSample | CollectionError:
        try:
            return future.result()
        except ProbeError as exc:
            logger.debug("%s: %s", target.label, exc)
            return CollectionError(target=target, kind=exc.kind, detail=exc.detail)
        except Exception as exc:  # noqa: BLE001 - one target never fails the cycle
            logger.exception("Unexpected failure reading %s", target.label)
            return CollectionError(
                target=target,
                kind=ErrorKind.UNKNOWN,
                detail=f"{type(exc).__name__}: {exc}",
            )
