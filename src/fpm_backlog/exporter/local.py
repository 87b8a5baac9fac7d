"""Local file exporter – writes metric records to JSONL files (dry run)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from ..config import LocalExporterConfig
from .base import BaseExporter, FailureKind, MetricRecord, SubmitError

logger = logging.getLogger(__name__)


class LocalExporter(BaseExporter):
    """Writes metric records to JSONL files on disk.

    One file per day is created inside the configured *output_dir*.
    """

    def __init__(self, config: LocalExporterConfig) -> None:
        self._config = config
        self.max_batch_size = config.max_batch_size
        self._output_dir = Path(config.output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._fh = None
        self._current_date: str | None = None
        logger.info("LocalExporter initialized → %s", self._output_dir)

    def _ensure_file(self) -> None:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._current_date != today or self._fh is None:
            if self._fh is not None:
                self._fh.close()
            filepath = self._output_dir / f"metrics-{today}.jsonl"
            self._fh = open(filepath, "a", encoding="utf-8")  # noqa: SIM115
            self._current_date = today

    def submit(self, records: Sequence[MetricRecord]) -> None:
        try:
            self._ensure_file()
            assert self._fh is not None
            for record in records:
                self._fh.write(json.dumps(record.to_dict()) + "\n")
            self._fh.flush()
        except OSError as exc:
            raise SubmitError(FailureKind.TRANSIENT, str(exc)) from exc
        for record in records:
            logger.info(
                "Would send metric %s=%s %s", record.name, record.value, record.dimensions,
            )

    def shutdown(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
        logger.info("LocalExporter shut down")
