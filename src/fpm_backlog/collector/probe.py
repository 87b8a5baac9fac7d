"""Namespace probes that read socket queue depths."""

from __future__ import annotations

import abc
import logging
import subprocess
from dataclasses import dataclass

from .base import ErrorKind, ProbeError, SocketDescriptor, SocketKind

logger = logging.getLogger(__name__)

_DENIED_MARKERS = ("permission denied", "operation not permitted", "password is required")
_VANISHED_MARKERS = ("no such process", "no such file or directory")


@dataclass(frozen=True)
class QueueDepth:
    """Kernel-reported queue columns for a listening socket.

    For a listener, Recv-Q is the number of connections waiting in the
    accept queue and Send-Q is the configured backlog limit.
    """

    receive_queue: int
    send_queue: int


class OsProbe(abc.ABC):
    """Abstract probe that looks at sockets from inside a process's network namespace."""

    @abc.abstractmethod
    def queue_depth(self, pid: int, socket: SocketDescriptor, timeout: float) -> QueueDepth:
        """Return queue depths for *socket* as seen by process *pid*.

        Raises :class:`ProbeError` classified by :class:`ErrorKind`.
        """


def _matches(local_address: str, socket: SocketDescriptor) -> bool:
    if socket.kind is SocketKind.UNIX:
        return local_address == socket.address
    return local_address.rsplit(":", 1)[-1] == socket.address


def parse_ss_output(output: str, socket: SocketDescriptor) -> QueueDepth | None:
    """Find *socket* in ``ss -l...H`` output and return its queue columns.

    Lines look like::

        u_str LISTEN 0 128 /var/run/php-fpm/www.socket 21442 * 0
        LISTEN 3 511 0.0.0.0:9000 0.0.0.0:*

    A tcp port bound on several addresses (e.g. IPv4 and IPv6) yields one
    line per listener; their queues are summed. Returns None when no line
    matches.
    """
    found = False
    recv_total = 0
    send_total = 0
    for line in output.splitlines():
        parts = line.split()
        if "LISTEN" not in parts:
            continue
        idx = parts.index("LISTEN")
        if len(parts) < idx + 4:
            continue
        if not _matches(parts[idx + 3], socket):
            continue
        try:
            recv_q, send_q = int(parts[idx + 1]), int(parts[idx + 2])
        except ValueError:
            logger.debug("Unparseable ss line: %r", line)
            continue
        found = True
        recv_total += recv_q
        send_total += send_q
    if not found:
        return None
    return QueueDepth(recv_total, send_total)


def classify_failure(stderr: str) -> ErrorKind:
    """Map nsenter / sudo stderr text to an :class:`ErrorKind`."""
    text = stderr.lower()
    if "failed to execute" in text:
        # nsenter got in, but could not start ss
        return ErrorKind.UNKNOWN
    if any(marker in text for marker in _DENIED_MARKERS):
        return ErrorKind.NAMESPACE_ENTRY_DENIED
    if any(marker in text for marker in _VANISHED_MARKERS):
        return ErrorKind.PROCESS_VANISHED
    return ErrorKind.UNKNOWN


class NsenterProbe(OsProbe):
    """Runs ``nsenter -t PID -n ss -l{x,t}nH`` and parses the listing.

    The child is killed when the timeout expires, so nothing outlives a
    probe call.
    """

    def __init__(
        self,
        *,
        use_sudo: bool = False,
        nsenter_path: str = "nsenter",
        ss_path: str = "ss",
    ) -> None:
        self._use_sudo = use_sudo
        self._nsenter_path = nsenter_path
        self._ss_path = ss_path

    def build_command(self, pid: int, socket: SocketDescriptor) -> list[str]:
        flags = "-lxnH" if socket.kind is SocketKind.UNIX else "-ltnH"
        cmd = [self._nsenter_path, "-t", str(pid), "-n", self._ss_path, flags]
        if self._use_sudo:
            cmd = ["sudo", "-n", *cmd]
        return cmd

    def queue_depth(self, pid: int, socket: SocketDescriptor, timeout: float) -> QueueDepth:
        cmd = self.build_command(pid, socket)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeError(ErrorKind.PROBE_TIMEOUT, f"no answer within {timeout:.1f}s") from exc
        except OSError as exc:
            raise ProbeError(ErrorKind.UNKNOWN, f"cannot run {cmd[0]}: {exc}") from exc

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            kind = classify_failure(stderr)
            raise ProbeError(kind, f"exit {proc.returncode}: {stderr}" if stderr else f"exit {proc.returncode}")

        depth = parse_ss_output(proc.stdout or "", socket)
        if depth is None:
            raise ProbeError(ErrorKind.SOCKET_NOT_FOUND, f"{socket} is not listening in pid {pid}'s namespace")
        return depth
