"""Host session protection.

The build must never disturb the session it runs under: the operator's shell,
terminal emulator, SSH daemon child or display-manager session. SessionGuard
records that process ancestry, refuses to signal any of it, turns termination
signals into a cancellation request, and watches the user's process count for
anomalies.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..errors import SessionIntegrityViolation
from . import processes
from .cancellation import CancellationToken
from .resources import ReleaseReport, ResourceTracker

logger = logging.getLogger(__name__)

# Heartbeat deltas outside this window are logged as anomalies.
PROCESS_DROP_THRESHOLD = -10
PROCESS_SURGE_THRESHOLD = 50


class SessionType(str, Enum):
    REMOTE_SHELL = "remote-shell"
    GRAPHICAL = "graphical"
    LOCAL_CONSOLE = "local-console"
    UNKNOWN = "unknown"


@dataclass
class SessionContext:
    session_type: SessionType = SessionType.UNKNOWN
    protected_process_ids: Set[int] = field(default_factory=set)
    baseline_process_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_type": self.session_type.value,
            "protected_process_ids": sorted(self.protected_process_ids),
            "baseline_process_count": self.baseline_process_count,
        }


def _stdio_is_tty() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty() and sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False


class SessionGuard:
    def __init__(
        self,
        *,
        tracker: ResourceTracker,
        token: CancellationToken,
        environ: Optional[Mapping[str, str]] = None,
        isatty: Callable[[], bool] = _stdio_is_tty,
        count_processes: Callable[[], int] = processes.count_user_processes,
        kill: Callable[[int, int], None] = os.kill,
    ) -> None:
        self.tracker = tracker
        self.token = token
        self.context = SessionContext()
        self._environ = os.environ if environ is None else environ
        self._isatty = isatty
        self._count_processes = count_processes
        self._kill = kill
        self._previous_handlers: Dict[int, Any] = {}
        self._background: List[Any] = []

    # -- identity ---------------------------------------------------------

    def classify_session(self) -> SessionContext:
        env = self._environ
        if env.get("SSH_CLIENT") or env.get("SSH_TTY") or env.get("SSH_CONNECTION"):
            session_type = SessionType.REMOTE_SHELL
        elif env.get("XDG_SESSION_TYPE") in {"x11", "wayland"} or env.get("WAYLAND_DISPLAY") or env.get("DISPLAY"):
            session_type = SessionType.GRAPHICAL
        elif self._isatty():
            session_type = SessionType.LOCAL_CONSOLE
        else:
            session_type = SessionType.UNKNOWN

        self.context.session_type = session_type
        try:
            self.context.baseline_process_count = self._count_processes()
        except OSError as e:
            logger.warning("Unable to count session processes: %s", e)
        logger.info("Session detected: %s", session_type.value)
        return self.context

    def protect(
        self,
        *,
        pid: Optional[int] = None,
        parent_of: Callable[[int], Optional[int]] = processes.parent_pid,
        session_leader: Optional[int] = None,
    ) -> Set[int]:
        """Record `pid` (default: this process) and its full ancestry up to init.

        The session leader and PID 1 are always included.
        """

        current = os.getpid() if pid is None else pid
        if session_leader is None:
            try:
                session_leader = os.getsid(0)
            except OSError:
                session_leader = None

        chain: Set[int] = {1}
        seen = 0
        while current and current not in chain:
            chain.add(current)
            seen += 1
            if seen > 256:
                break
            current = parent_of(current)  # type: ignore[assignment]

        if session_leader:
            chain.add(session_leader)

        self.context.protected_process_ids |= chain
        logger.info("Protected %d session process(es) from cleanup", len(chain))
        return set(chain)

    def is_protected(self, pid: int) -> bool:
        return pid in self.context.protected_process_ids

    def filter_targets(self, pids: Iterable[int]) -> List[int]:
        """Drop protected PIDs from a cleanup target list."""

        kept: List[int] = []
        for pid in pids:
            if self.is_protected(pid):
                logger.warning("Not touching protected session process %d", pid)
                continue
            kept.append(pid)
        return kept

    def signal_process(self, pid: int, sig: int) -> bool:
        """Send `sig` to a build-owned process.

        Raises SessionIntegrityViolation before sending anything if `pid` is
        protected. Returns False when the process is already gone.
        """

        if self.is_protected(pid):
            raise SessionIntegrityViolation(pid, f"send signal {sig} to")
        try:
            self._kill(pid, sig)
        except ProcessLookupError:
            return False
        return True

    # -- signals ----------------------------------------------------------

    def install_signal_handlers(self) -> None:
        wanted = [signal.SIGINT, signal.SIGTERM, signal.SIGQUIT, signal.SIGHUP]
        for sig in wanted:
            try:
                self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
            except (ValueError, OSError) as e:
                # Only the main thread may install handlers.
                logger.warning("Cannot install handler for %s: %s", signal.Signals(sig).name, e)
        logger.info("Signal handlers installed (session=%s)", self.context.session_type.value)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError):
                continue
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if signum == signal.SIGHUP and self.context.session_type == SessionType.REMOTE_SHELL:
            # A dropped SSH connection must not abort the build.
            logger.warning("SIGHUP received (remote session dropped?); build continues")
            return
        if self.token.cancelled:
            logger.warning("%s received again; remaining releases go straight to lazy mode", name)
        else:
            logger.warning("%s received; stopping at the next safe checkpoint and rolling back", name)
        self.token.cancel(name)

    # -- liveness ---------------------------------------------------------

    def heartbeat(self) -> int:
        """Recount the user's processes; log (only) on an unexpected delta."""

        try:
            current = self._count_processes()
        except OSError as e:
            logger.debug("Heartbeat process count failed: %s", e)
            return 0

        baseline = self.context.baseline_process_count
        self.context.baseline_process_count = current
        if baseline is None:
            return 0

        delta = current - baseline
        if delta < PROCESS_DROP_THRESHOLD:
            logger.warning("Significant process reduction detected: %d processes", delta)
        elif delta > PROCESS_SURGE_THRESHOLD:
            logger.warning("Process surge detected: +%d processes", delta)
        else:
            logger.debug("Heartbeat: %d processes (%+d)", current, delta)
        return delta

    # -- teardown ---------------------------------------------------------

    def add_background_task(self, task: Any) -> None:
        self._background.append(task)

    def stop_background_tasks(self) -> None:
        while self._background:
            self._background.pop().stop()

    def rollback(self) -> ReleaseReport:
        """Stop background tasks and unwind every tracked resource."""

        self.stop_background_tasks()
        logger.warning("Rolling back %d tracked resource(s)", len(self.tracker.active))
        return self.tracker.release_all()
