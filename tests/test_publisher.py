"""Tests for record building, batching and retry behaviour."""

import pytest

from fakes import RecordingExporter, make_target
from fpm_backlog.collector.base import CollectionError, CycleResult, ErrorKind, QueueSample
from fpm_backlog.config import PublisherConfig
from fpm_backlog.exporter.base import FailureKind, Resolution, Unit
from fpm_backlog.exporter.publisher import MetricPublisher, backoff_delay, chunked


def _result(samples=(), errors=(), started_at=1000.0):
    return CycleResult(samples=tuple(samples), errors=tuple(errors), started_at=started_at, duration=0.1)


def _sample(cid="a", recv=5, send=0, at=1000.0):
    return QueueSample(target=make_target(cid, 10), receive_queue=recv, send_queue=send, collected_at=at)


def _publisher(exporter, **config):
    sleeps = []
    publisher = MetricPublisher(
        exporter,
        PublisherConfig(**config),
        host_id="H",
        sleep=sleeps.append,
        rand=lambda low, high: high,
    )
    return publisher, sleeps


def test_sample_becomes_two_records():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter)
    outcome = publisher.publish(_result([_sample("a", recv=5, send=0, at=1000.0)]))

    assert outcome.succeeded == 1
    assert outcome.failed == 0
    assert outcome.records_published == 2
    (batch,) = exporter.batches
    recv, send = batch
    assert recv.name == "QueueDepth.Receive"
    assert recv.dimensions == {"container": "a", "host": "H"}
    assert recv.value == 5
    assert recv.timestamp == 1000.0
    assert recv.unit is Unit.COUNT
    assert recv.resolution is Resolution.HIGH
    assert send.name == "QueueDepth.Send"
    assert send.dimensions == {"container": "a", "host": "H"}
    assert send.value == 0
    assert send.timestamp == 1000.0


def test_extra_dimensions_and_standard_resolution():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter, dimensions={"env": "prod"}, high_resolution=False)
    publisher.publish(_result([_sample()]))
    record = exporter.batches[0][0]
    assert record.dimensions == {"env": "prod", "container": "a", "host": "H"}
    assert record.resolution is Resolution.STANDARD


def test_errors_are_counted_not_published():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter)
    errors = [
        CollectionError(make_target("b", 11), ErrorKind.SOCKET_NOT_FOUND, "gone"),
        CollectionError(make_target("c", 12), ErrorKind.SOCKET_NOT_FOUND, "gone"),
    ]
    outcome = publisher.publish(_result([_sample("a")], errors))
    assert outcome.collection_errors == {"SocketNotFound": 2}
    published_containers = {r.dimensions["container"] for r in exporter.batches[0]}
    assert published_containers == {"a"}


def test_empty_cycle_submits_nothing():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter)
    errors = [CollectionError(make_target("b", 11), ErrorKind.PROBE_TIMEOUT)]
    outcome = publisher.publish(_result([], errors))
    assert exporter.attempts == []
    assert outcome.succeeded == 0
    assert outcome.failed == 0
    assert outcome.collection_errors == {"ProbeTimeout": 1}


def test_batches_respect_backend_limit():
    exporter = RecordingExporter(max_batch_size=3)
    publisher, _ = _publisher(exporter)
    samples = [_sample(cid) for cid in "abcd"]
    outcome = publisher.publish(_result(samples))
    assert [len(b) for b in exporter.batches] == [3, 3, 2]
    assert outcome.succeeded == 3
    assert outcome.records_published == 8


def test_throttled_then_success_within_ceiling():
    exporter = RecordingExporter(failures=[FailureKind.THROTTLED] * 3)
    publisher, sleeps = _publisher(exporter, max_attempts=5, base_backoff_seconds=0.5, max_backoff_seconds=8.0)
    outcome = publisher.publish(_result([_sample()]))
    assert outcome.succeeded == 1
    assert outcome.failed == 0
    assert len(exporter.attempts) == 4
    assert len(exporter.batches) == 1
    assert sleeps == [0.5, 1.0, 2.0]


def test_retries_exhausted_drops_batch():
    exporter = RecordingExporter(failures=[FailureKind.TRANSIENT] * 10)
    publisher, sleeps = _publisher(exporter, max_attempts=3)
    outcome = publisher.publish(_result([_sample()]))
    assert outcome.succeeded == 0
    assert outcome.failed == 1
    assert outcome.records_dropped == 2
    assert len(exporter.attempts) == 3
    assert len(sleeps) == 2
    assert exporter.batches == []


@pytest.mark.parametrize("kind", [FailureKind.AUTH_REJECTED, FailureKind.MALFORMED_REQUEST])
def test_non_retryable_fails_fast(kind):
    exporter = RecordingExporter(failures=[kind])
    publisher, sleeps = _publisher(exporter)
    outcome = publisher.publish(_result([_sample()]))
    assert outcome.failed == 1
    assert outcome.succeeded == 0
    assert len(exporter.attempts) == 1
    assert sleeps == []


def test_failed_batch_does_not_block_others():
    exporter = RecordingExporter(failures=[FailureKind.AUTH_REJECTED], max_batch_size=2)
    publisher, _ = _publisher(exporter)
    outcome = publisher.publish(_result([_sample("a"), _sample("b")]))
    assert outcome.failed == 1
    assert outcome.succeeded == 1
    assert exporter.batches[0][0].dimensions["container"] == "b"


def test_successful_batch_is_submitted_once():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter)
    publisher.publish(_result([_sample()]))
    assert len(exporter.attempts) == 1


def test_aggregate_records():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter, aggregate=True)
    publisher.publish(_result([_sample("a", 2, 128), _sample("b", 3, 511)], started_at=999.0))
    totals = [r for r in exporter.batches[0] if "container" not in r.dimensions]
    assert [(r.name, r.value, r.timestamp) for r in totals] == [
        ("QueueDepth.Receive", 5, 999.0),
        ("QueueDepth.Send", 639, 999.0),
    ]
    assert totals[0].dimensions == {"host": "H"}


def test_aggregate_skipped_when_targets_failed():
    exporter = RecordingExporter()
    publisher, _ = _publisher(exporter, aggregate=True)
    outcome = publisher.publish(_result(
        [_sample("a", recv=2, send=128)],
        errors=[
            CollectionError(make_target("b", 11), ErrorKind.PROBE_TIMEOUT, "deadline"),
            CollectionError(make_target("c", 12), ErrorKind.PROBE_TIMEOUT, "deadline"),
        ],
    ))
    # per-container records still go out, the partial host total does not
    assert outcome.records_published == 2
    assert all("container" in r.dimensions for r in exporter.batches[0])
    assert outcome.collection_errors == {"ProbeTimeout": 2}


def test_backoff_delay():
    upper = lambda low, high: high  # noqa: E731
    assert backoff_delay(0, 1.0, 10.0, upper) == 0.0
    assert backoff_delay(1, 1.0, 10.0, upper) == 1.0
    assert backoff_delay(3, 1.0, 10.0, upper) == 4.0
    assert backoff_delay(10, 1.0, 10.0, upper) == 10.0
    assert 0.5 <= backoff_delay(1, 1.0, 10.0) <= 1.0


def test_chunked():
    assert [len(c) for c in chunked(list(range(5)), 2)] == [2, 2, 1]
    assert list(chunked([], 2)) == []
