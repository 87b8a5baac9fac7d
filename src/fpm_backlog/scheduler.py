"""Periodic driver for measurement cycles."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from .collector.base import CycleResult
from .collector.directory import DirectoryUnavailable
from .collector.manager import SampleCollector
from .collector.scanner import ContainerScanner
from .config import SchedulerConfig
from .exporter.publisher import MetricPublisher, PublishOutcome

logger = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"


@dataclass
class SchedulerStats:
    """Counters kept across cycles."""

    cycles_completed: int = 0
    cycles_failed: int = 0
    ticks_skipped: int = 0
    batches_published: int = 0
    batches_dropped: int = 0
    collection_errors: dict[str, int] = field(default_factory=dict)


class Scheduler:
    """Runs scan → collect → publish on a fixed interval.

    Cycles never overlap: a tick that fires while a cycle is still running is
    skipped and counted. A failing cycle is logged and counted; the next tick
    runs as usual.
    """

    def __init__(
        self,
        scanner: ContainerScanner,
        collector: SampleCollector,
        publisher: MetricPublisher,
        config: SchedulerConfig,
        cycle_deadline: float,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scanner = scanner
        self._collector = collector
        self._publisher = publisher
        self._config = config
        self._cycle_deadline = cycle_deadline
        self._monotonic = monotonic

        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._stats = SchedulerStats()
        self._idle = threading.Event()
        self._idle.set()
        self._stop_event = threading.Event()
        self._timer: threading.Thread | None = None
        self._cycle: threading.Thread | None = None
        self.last_result: CycleResult | None = None

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> SchedulerStats:
        """A snapshot of the counters."""
        with self._lock:
            return replace(self._stats, collection_errors=dict(self._stats.collection_errors))

    # -- cycle -------------------------------------------------------------

    def _record_failure(self) -> None:
        with self._lock:
            self._stats.cycles_failed += 1

    def _run_cycle(self) -> PublishOutcome | None:
        try:
            targets = self._scanner.scan()
        except DirectoryUnavailable as exc:
            logger.error("Cycle abandoned, container directory unavailable: %s", exc)
            self._record_failure()
            return None
        except Exception:
            logger.exception("Cycle abandoned, scan failed")
            self._record_failure()
            return None

        try:
            result = self._collector.collect(targets, self._cycle_deadline)
            outcome = self._publisher.publish(result)
        except Exception:
            logger.exception("Cycle failed")
            self._record_failure()
            return None

        with self._lock:
            self.last_result = result
            self._stats.cycles_completed += 1
            self._stats.batches_published += outcome.succeeded
            self._stats.batches_dropped += outcome.failed
            for kind, count in outcome.collection_errors.items():
                self._stats.collection_errors[kind] = self._stats.collection_errors.get(kind, 0) + count

        logger.info(
            "Cycle done: %d target(s), %d sample(s), %d error(s), %.2fs",
            result.target_count, len(result.samples), len(result.errors), result.duration,
        )
        return outcome

    def _finish_cycle(self) -> None:
        with self._lock:
            if self._state is SchedulerState.RUNNING:
                self._state = SchedulerState.IDLE
            self._idle.set()

    def _cycle_main(self) -> None:
        try:
            self._run_cycle()
        finally:
            self._finish_cycle()

    def run_once(self) -> PublishOutcome | None:
        """Run a single cycle in the calling thread.

        Returns None when the cycle failed.
        """
        with self._lock:
            if self._state is not SchedulerState.IDLE:
                raise RuntimeError(f"cannot run a cycle while {self._state.value}")
            self._state = SchedulerState.RUNNING
            self._idle.clear()
        try:
            return self._run_cycle()
        finally:
            self._finish_cycle()

    def tick(self) -> bool:
        """Start a cycle in the background unless one is running.

        Returns True if a cycle was started.
        """
        with self._lock:
            if self._state is SchedulerState.SHUTTING_DOWN:
                return False
            if self._state is SchedulerState.RUNNING:
                self._stats.ticks_skipped += 1
                logger.warning("Previous cycle still running, skipping tick")
                return False
            self._state = SchedulerState.RUNNING
            self._idle.clear()
            self._cycle = threading.Thread(target=self._cycle_main, name="fpm-cycle", daemon=True)
            self._cycle.start()
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no cycle is running. Returns False on timeout."""
        return self._idle.wait(timeout)

    # -- timer -------------------------------------------------------------

    def _run(self) -> None:
        """Background timer loop."""
        interval = self._config.interval_seconds
        next_tick = self._monotonic()
        while not self._stop_event.is_set():
            self.tick()
            next_tick += interval
            now = self._monotonic()
            if next_tick < now:
                # fell behind; realign instead of firing a burst of ticks
                next_tick = now + interval
            if self._stop_event.wait(next_tick - now):
                break

    def start(self) -> None:
        """Start ticking in the background."""
        if self._timer is not None:
            return
        self._stop_event.clear()
        self._timer = threading.Thread(target=self._run, name="fpm-scheduler", daemon=True)
        self._timer.start()
        logger.info("Scheduler started (interval=%.1fs)", self._config.interval_seconds)

    def stop(self, grace: float | None = None) -> bool:
        """Stop ticking and wait up to *grace* seconds for the running cycle.

        Returns True if no cycle was left running.
        """
        if grace is None:
            grace = self._config.grace_seconds
        with self._lock:
            self._state = SchedulerState.SHUTTING_DOWN
        self._stop_event.set()
        if self._timer is not None:
            self._timer.join(timeout=5)
            self._timer = None

        finished = self.wait_idle(grace)
        if finished:
            logger.info("Scheduler stopped")
        else:
            logger.warning("Scheduler stopped with a cycle still running after %.1fs grace", grace)
        return finished
