"""Amazon CloudWatch exporter – PutMetricData through boto3."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

from ..config import CloudWatchConfig
from .base import BaseExporter, FailureKind, MetricRecord, Resolution, SubmitError

logger = logging.getLogger(__name__)

_THROTTLE_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
})
_AUTH_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
    "IncompleteSignature",
    "MissingAuthenticationToken",
})
_MALFORMED_CODES = frozenset({
    "InvalidParameterValue",
    "InvalidParameterCombination",
    "MissingParameter",
    "MissingRequiredParameter",
    "ValidationError",
})

# botocore retries are disabled; MetricPublisher owns the retry policy
_CLIENT_CONFIG = Config(
    retries={"max_attempts": 1, "mode": "standard"},
    connect_timeout=5,
    read_timeout=10,
)


def classify_client_error(exc: ClientError) -> FailureKind:
    """Map a CloudWatch error response to a :class:`FailureKind`."""
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    if code in _THROTTLE_CODES or status == 429:
        return FailureKind.THROTTLED
    if code in _AUTH_CODES or status in (401, 403):
        return FailureKind.AUTH_REJECTED
    if code in _MALFORMED_CODES:
        return FailureKind.MALFORMED_REQUEST
    if status >= 500 or not status:
        return FailureKind.TRANSIENT
    return FailureKind.MALFORMED_REQUEST


def to_metric_datum(record: MetricRecord) -> dict[str, Any]:
    """Convert a record to a CloudWatch ``MetricDatum`` dict."""
    return {
        "MetricName": record.name,
        "Dimensions": [
            {"Name": key, "Value": value}
            for key, value in sorted(record.dimensions.items())
        ],
        "Timestamp": datetime.fromtimestamp(record.timestamp, tz=timezone.utc),
        "Value": float(record.value),
        "Unit": record.unit.value,
        "StorageResolution": 1 if record.resolution is Resolution.HIGH else 60,
    }


class CloudWatchExporter(BaseExporter):
    """Publishes records as CloudWatch custom metrics.

    The boto3 client is created once; botocore clients are safe to share
    between threads.
    """

    def __init__(self, config: CloudWatchConfig, client: Any = None) -> None:
        self._config = config
        self.max_batch_size = config.max_batch_size
        if client is None:
            client = boto3.client("cloudwatch", config=_CLIENT_CONFIG, **config.to_boto3_kwargs())
        self._client = client
        logger.info(
            "CloudWatchExporter initialized → namespace=%s region=%s",
            config.namespace,
            self._client.meta.region_name,
        )

    def submit(self, records: Sequence[MetricRecord]) -> None:
        if len(records) > self.max_batch_size:
            raise SubmitError(
                FailureKind.MALFORMED_REQUEST,
                f"batch of {len(records)} exceeds {self.max_batch_size} records",
            )
        try:
            self._client.put_metric_data(
                Namespace=self._config.namespace,
                MetricData=[to_metric_datum(r) for r in records],
            )
        except ClientError as exc:
            raise SubmitError(classify_client_error(exc), str(exc)) from exc
        except (NoCredentialsError, PartialCredentialsError) as exc:
            raise SubmitError(FailureKind.AUTH_REJECTED, str(exc)) from exc
        except ParamValidationError as exc:
            raise SubmitError(FailureKind.MALFORMED_REQUEST, str(exc)) from exc
        except BotoCoreError as exc:
            raise SubmitError(FailureKind.TRANSIENT, str(exc)) from exc

    def shutdown(self) -> None:
        self._client.close()
        logger.info("CloudWatchExporter shut down")
