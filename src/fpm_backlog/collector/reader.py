"""Reads one queue-depth sample for a scan target."""

from __future__ import annotations

import logging
import time
from typing import Callable

import psutil

from .base import ErrorKind, ProbeError, QueueSample, ScanTarget
from .probe import OsProbe

logger = logging.getLogger(__name__)


class SocketQueueReader:
    """Resolves the target's namespace owner and asks the probe for queue depths.

    Every failure is raised as :class:`ProbeError`; the reader never returns a
    sample without a resolved socket.
    """

    def __init__(
        self,
        probe: OsProbe,
        timeout: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._probe = probe
        self._timeout = timeout
        self._clock = clock

    def _check_alive(self, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                raise ProbeError(ErrorKind.PROCESS_VANISHED, f"pid {pid} is a zombie")
        except (psutil.NoSuchProcess, psutil.ZombieProcess) as exc:
            raise ProbeError(ErrorKind.PROCESS_VANISHED, f"pid {pid} no longer exists") from exc
        except psutil.AccessDenied:
            # the process exists; whether we may enter it is the probe's call
            pass

    def read(self, target: ScanTarget) -> QueueSample:
        self._check_alive(target.entry_pid)
        try:
            depth = self._probe.queue_depth(target.entry_pid, target.socket, self._timeout)
        except ProbeError:
            raise
        except OSError as exc:
            raise ProbeError(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}") from exc

        if depth.receive_queue < 0 or depth.send_queue < 0:
            raise ProbeError(
                ErrorKind.UNKNOWN,
                f"negative queue length reported ({depth.receive_queue}/{depth.send_queue})",
            )
        logger.debug(
            "%s %s recv=%d send=%d",
            target.label, target.socket, depth.receive_queue, depth.send_queue,
        )
        return QueueSample(
            target=target,
            receive_queue=depth.receive_queue,
            send_queue=depth.send_queue,
            collected_at=self._clock(),
        )
