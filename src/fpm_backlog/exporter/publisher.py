"""Turns cycle results into metric batches and delivers them."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

from ..collector.base import CycleResult, QueueSample
from ..config import PublisherConfig
from .base import BaseExporter, MetricRecord, Resolution, SubmitError

logger = logging.getLogger(__name__)

RECEIVE_METRIC = "QueueDepth.Receive"
SEND_METRIC = "QueueDepth.Send"


@dataclass
class PublishOutcome:
    """Result of publishing one cycle."""

    succeeded: int = 0
    failed: int = 0
    records_published: int = 0
    records_dropped: int = 0
    collection_errors: dict[str, int] = field(default_factory=dict)


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retry number *attempt* (1-based).

    Exponential in the attempt number, capped, with jitter over the upper
    half of the window.
    """
    if attempt < 1 or base <= 0:
        return 0.0
    window = min(base * (2 ** (attempt - 1)), cap)
    return rand(window / 2, window)


def chunked(records: Sequence[MetricRecord], size: int) -> Iterator[list[MetricRecord]]:
    for start in range(0, len(records), size):
        yield list(records[start:start + size])


class MetricPublisher:
    """Builds metric records from samples and submits them with retries.

    A batch that exhausts its attempts, or fails with a non-retryable error,
    is dropped; nothing is carried over into the next cycle.
    """

    def __init__(
        self,
        exporter: BaseExporter,
        config: PublisherConfig,
        host_id: str,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._exporter = exporter
        self._config = config
        self._host_id = host_id
        self._sleep = sleep
        self._rand = rand
        self._resolution = Resolution.HIGH if config.high_resolution else Resolution.STANDARD

    def _dimensions(self, container_id: str | None) -> dict[str, str]:
        dims = dict(self._config.dimensions)
        if container_id is not None:
            dims["container"] = container_id
        dims["host"] = self._host_id
        return dims

    def records_for_sample(self, sample: QueueSample) -> list[MetricRecord]:
        dims = self._dimensions(sample.target.container_id)
        return [
            MetricRecord(
                name=RECEIVE_METRIC,
                dimensions=dims,
                value=sample.receive_queue,
                timestamp=sample.collected_at,
                resolution=self._resolution,
            ),
            MetricRecord(
                name=SEND_METRIC,
                dimensions=dict(dims),
                value=sample.send_queue,
                timestamp=sample.collected_at,
                resolution=self._resolution,
            ),
        ]

    def build_records(self, result: CycleResult) -> list[MetricRecord]:
        records: list[MetricRecord] = []
        for sample in result.samples:
            records.extend(self.records_for_sample(sample))

        if self._config.aggregate and result.samples:
            if result.errors:
                # a total over a subset of the pools would read as a drop
                logger.info(
                    "Skipping host total: %d of %d target(s) not measured",
                    len(result.errors), result.target_count,
                )
                return records
            dims = self._dimensions(None)
            for name, total in (
                (RECEIVE_METRIC, sum(s.receive_queue for s in result.samples)),
                (SEND_METRIC, sum(s.send_queue for s in result.samples)),
            ):
                records.append(MetricRecord(
                    name=name,
                    dimensions=dict(dims),
                    value=total,
                    timestamp=result.started_at,
                    resolution=self._resolution,
                ))
        return records

    def _report_errors(self, result: CycleResult) -> dict[str, int]:
        for err in result.errors:
            logger.warning(
                "No sample for %s: %s %s", err.target.label, err.kind.value, err.detail,
            )
        return result.error_counts()

    def _submit_batch(self, batch: list[MetricRecord]) -> bool:
        attempt = 1
        while True:
            try:
                self._exporter.submit(batch)
                return True
            except SubmitError as exc:
                if not exc.retryable:
                    logger.error(
                        "Dropping batch of %d record(s): %s (not retryable)", len(batch), exc,
                    )
                    return False
                if attempt >= self._config.max_attempts:
                    logger.error(
                        "Dropping batch of %d record(s) after %d attempt(s): %s",
                        len(batch), attempt, exc,
                    )
                    return False
                delay = backoff_delay(
                    attempt,
                    self._config.base_backoff_seconds,
                    self._config.max_backoff_seconds,
                    self._rand,
                )
                logger.warning(
                    "Batch submission failed (%s), retry %d/%d in %.2fs",
                    exc.kind.value, attempt, self._config.max_attempts - 1, delay,
                )
                self._sleep(delay)
                attempt += 1

    def publish(self, result: CycleResult) -> PublishOutcome:
        outcome = PublishOutcome(collection_errors=self._report_errors(result))
        records = self.build_records(result)
        if not records:
            return outcome

        for batch in chunked(records, max(1, self._exporter.max_batch_size)):
            if self._submit_batch(batch):
                outcome.succeeded += 1
                outcome.records_published += len(batch)
            else:
                outcome.failed += 1
                outcome.records_dropped += len(batch)

        logger.info(
            "Published %d record(s) in %d batch(es), %d batch(es) dropped",
            outcome.records_published, outcome.succeeded, outcome.failed,
        )
        return outcome
