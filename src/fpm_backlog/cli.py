"""CLI interface for fpm_backlog."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import time

from . import __version__
from .collector.base import CycleResult
from .collector.directory import ContainerDirectory, DockerDirectory
from .collector.manager import SampleCollector
from .collector.probe import NsenterProbe, OsProbe
from .collector.reader import SocketQueueReader
from .collector.scanner import ContainerScanner
from .config import ConfigError, MonitorConfig, load_config, parse_dimensions, with_overrides
from .exporter.base import BaseExporter
from .exporter.publisher import MetricPublisher
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def build_exporter(cfg: MonitorConfig) -> BaseExporter:
    """Create the backend client named by ``publisher.backend``."""
    backend = cfg.publisher.backend
    if backend == "local":
        from .exporter.local import LocalExporter
        return LocalExporter(cfg.local_exporter)
    if backend == "otlp":
        from .exporter.otel import OtelExporter
        return OtelExporter(cfg.otel)
    from .exporter.cloudwatch import CloudWatchExporter
    return CloudWatchExporter(cfg.cloudwatch)


def build_scheduler(
    cfg: MonitorConfig,
    exporter: BaseExporter,
    directory: ContainerDirectory | None = None,
    probe: OsProbe | None = None,
) -> Scheduler:
    """Wire scanner, collector and publisher together."""
    if directory is None:
        directory = DockerDirectory()
    if probe is None:
        probe = NsenterProbe(
            use_sudo=cfg.probe.use_sudo,
            nsenter_path=cfg.probe.nsenter_path,
            ss_path=cfg.probe.ss_path,
        )
    scanner = ContainerScanner(directory, cfg.scanner)
    reader = SocketQueueReader(probe, timeout=cfg.probe.timeout_seconds)
    collector = SampleCollector(reader, cfg.collector)
    publisher = MetricPublisher(exporter, cfg.publisher, host_id=cfg.host_id)
    return Scheduler(
        scanner,
        collector,
        publisher,
        cfg.scheduler,
        cycle_deadline=cfg.collector.cycle_deadline_seconds,
    )


def print_cycle(result: CycleResult) -> None:
    """Pretty-print one cycle's samples and errors."""
    from rich.console import Console
    from rich.table import Table

    table = Table(title="PHP-FPM listen queues", show_lines=False)
    table.add_column("Container", style="cyan", width=24)
    table.add_column("Socket", style="magenta", width=36)
    table.add_column("Recv-Q", justify="right", width=8)
    table.add_column("Send-Q", justify="right", width=8)
    table.add_column("Status", width=40)

    for sample in result.samples:
        style = "yellow" if sample.receive_queue else ""
        recv = f"[{style}]{sample.receive_queue}[/{style}]" if style else str(sample.receive_queue)
        table.add_row(
            sample.target.label,
            str(sample.target.socket),
            recv,
            str(sample.send_queue),
            "ok",
        )
    for err in result.errors:
        table.add_row(
            err.target.label,
            str(err.target.socket),
            "-",
            "-",
            f"[red]{err.kind.value}[/red] {err.detail}",
        )

    console = Console()
    console.print(table)
    console.print(f"  {result.target_count} target(s) in {result.duration:.2f}s")


def _load(args: argparse.Namespace) -> MonitorConfig:
    cfg = load_config(args.config)
    overrides = {
        "scheduler": {"interval_seconds": getattr(args, "interval", None)},
        "cloudwatch": {
            "region": getattr(args, "region", None),
            "namespace": getattr(args, "namespace", None),
        },
    }
    dimensions = getattr(args, "dimension", None)
    if dimensions:
        overrides["publisher"] = {
            "dimensions": {**cfg.publisher.dimensions, **parse_dimensions(dimensions)},
        }
    if getattr(args, "dry_run", False):
        overrides.setdefault("publisher", {})["backend"] = "local"
    return with_overrides(cfg, **overrides)


def _cmd_run(args: argparse.Namespace) -> int:
    """Run the monitoring loop until interrupted."""
    cfg = _load(args)
    try:
        exporter = build_exporter(cfg)
    except Exception:
        logger.exception("Cannot initialize %s backend", cfg.publisher.backend)
        return EXIT_STARTUP_FAILURE

    scheduler = build_scheduler(cfg, exporter)

    stop = False

    def _handle_signal(_sig: int, _frame: object) -> None:
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(
        "Starting PHP-FPM queue monitor (host=%s, backend=%s, interval=%.1fs)",
        cfg.host_id, cfg.publisher.backend, cfg.scheduler.interval_seconds,
    )
    scheduler.start()
    try:
        while not stop:
            time.sleep(0.5)
    finally:
        scheduler.stop()
        exporter.shutdown()
    stats = scheduler.stats
    logger.info(
        "Stopped after %d cycle(s): %d failed, %d tick(s) skipped, %d batch(es) dropped",
        stats.cycles_completed, stats.cycles_failed, stats.ticks_skipped, stats.batches_dropped,
    )
    return EXIT_OK


def _cmd_once(args: argparse.Namespace) -> int:
    """Run a single cycle and show what was measured."""
    cfg = _load(args)
    try:
        exporter = build_exporter(cfg)
    except Exception:
        logger.exception("Cannot initialize %s backend", cfg.publisher.backend)
        return EXIT_STARTUP_FAILURE

    scheduler = build_scheduler(cfg, exporter)
    try:
        outcome = scheduler.run_once()
    finally:
        exporter.shutdown()

    if args.json:
        if scheduler.last_result is not None:
            print(json.dumps(scheduler.last_result.to_dict(), indent=2))
        return EXIT_OK

    if scheduler.last_result is not None and not args.no_table:
        print_cycle(scheduler.last_result)
    if outcome is None:
        print("Cycle failed, see log for details.")
    else:
        print(f"Published {outcome.records_published} record(s), dropped {outcome.records_dropped}.")
    return EXIT_OK


def _cmd_version(_args: argparse.Namespace) -> int:
    print(f"fpm-backlog {__version__}")
    return EXIT_OK


def _add_backend_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--region", "-r", default=None, help="AWS region for CloudWatch")
    p.add_argument("--namespace", "-n", default=None, help="CloudWatch namespace for metrics")
    p.add_argument(
        "--dimension", "-d", action="append", default=[],
        help="Extra metric dimension as key=value (repeatable)",
    )
    p.add_argument("--dry-run", action="store_true", help="Write metrics to local JSONL instead of sending")


def main(argv: list[str] | None = None) -> int:
    """Entry point for the fpm-backlog CLI."""
    parser = argparse.ArgumentParser(
        prog="fpm-backlog",
        description="Export PHP-FPM listen queue depths of local containers as metrics",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to fpm_backlog.yaml")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command")

    # run
    run_p = sub.add_parser("run", help="Start the monitoring loop")
    run_p.add_argument("--interval", "-i", type=float, default=None, help="Seconds between cycles")
    _add_backend_options(run_p)
    run_p.set_defaults(func=_cmd_run)

    # once
    once_p = sub.add_parser("once", help="Run one cycle and print the result")
    once_p.add_argument("--no-table", action="store_true", help="Skip rich table output")
    once_p.add_argument("--json", action="store_true", help="Print the cycle as JSON instead of a table")
    _add_backend_options(once_p)
    once_p.set_defaults(func=_cmd_once)

    # version
    ver_p = sub.add_parser("version", help="Print version")
    ver_p.set_defaults(func=_cmd_version)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_CONFIG_ERROR

    try:
        return args.func(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
