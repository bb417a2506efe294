"""Ledger of every externally visible resource the build holds.

Handles are pushed on successful acquisition and popped in strict reverse
acquisition order (LIFO) on release, whichever code path triggers the
teardown. Each release escalates plain -> forced -> lazy; a handle that still
refuses is recorded as failed and the unwind carries on with the rest of the
stack.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from ..errors import BuildInterrupted, SessionIntegrityViolation
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    BIND_MOUNT = "bind-mount"
    PSEUDO_FS_MOUNT = "pseudo-fs-mount"
    LOOP_ATTACH = "loop-attach"
    DEVICE_MOUNT = "device-mount"
    CHROOT_SESSION = "chroot-session"


class HandleStatus(str, Enum):
    ACTIVE = "active"
    RELEASING = "releasing"
    RELEASED = "released"
    RELEASE_FAILED = "release-failed"


class ReleaseMode(str, Enum):
    PLAIN = "plain"
    FORCED = "forced"
    LAZY = "lazy"


DEFAULT_ESCALATION = (ReleaseMode.PLAIN, ReleaseMode.FORCED, ReleaseMode.LAZY)


@dataclass
class ResourceHandle:
    id: str
    kind: ResourceKind
    acquire_order: int
    status: HandleStatus = HandleStatus.ACTIVE
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "acquire_order": self.acquire_order,
            "status": self.status.value,
            "value": self.value if isinstance(self.value, (str, int, type(None))) else str(self.value),
        }


class Releaser(Protocol):
    """Kind-specific release operation.

    Must raise ResourceBusyError (or any other error) when the resource is
    still held, and return normally when it is gone, including when it was
    already gone before the call.
    """

    def release(self, handle: ResourceHandle, mode: ReleaseMode) -> None:
        ...


@dataclass(frozen=True)
class ReleaseFailure:
    handle: ResourceHandle
    modes_tried: List[str]
    error: str
    integrity_violation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle.to_dict(),
            "modes_tried": list(self.modes_tried),
            "error": self.error,
            "integrity_violation": self.integrity_violation,
        }


@dataclass
class ReleaseReport:
    released: List[ResourceHandle] = field(default_factory=list)
    failures: List[ReleaseFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def empty(self) -> bool:
        return not self.released and not self.failures

    @property
    def integrity_violations(self) -> List[ReleaseFailure]:
        return [f for f in self.failures if f.integrity_violation]

    def extend(self, other: "ReleaseReport") -> None:
        self.released.extend(other.released)
        self.failures.extend(other.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "released": [h.to_dict() for h in self.released],
            "failures": [f.to_dict() for f in self.failures],
        }


class ResourceTracker:
    """Stack-like ledger of acquired resources, guarded by a single lock.

    One instance is built per run and passed explicitly to every component
    that acquires resources.
    """

    def __init__(
        self,
        *,
        releasers: Optional[Mapping[ResourceKind, Releaser]] = None,
        token: Optional[CancellationToken] = None,
        escalation: Sequence[ReleaseMode] = DEFAULT_ESCALATION,
        pause_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._releasers: Dict[ResourceKind, Releaser] = dict(releasers or {})
        self._token = token
        self._escalation = tuple(escalation)
        self._pause_s = pause_s
        self._sleep = sleep
        self._lock = threading.RLock()
        self._ledger: List[ResourceHandle] = []
        self._abandoned: List[ResourceHandle] = []
        self._seq = itertools.count(1)
        self._unwinding = False

    def register_releaser(self, kinds: Iterable[ResourceKind], releaser: Releaser) -> None:
        with self._lock:
            for kind in kinds:
                self._releasers[kind] = releaser

    @property
    def active(self) -> List[ResourceHandle]:
        with self._lock:
            return list(self._ledger)

    @property
    def abandoned(self) -> List[ResourceHandle]:
        """Handles that were popped but could not be released."""
        with self._lock:
            return list(self._abandoned)

    def find(self, kind: ResourceKind, resource_id: str) -> Optional[ResourceHandle]:
        with self._lock:
            for h in self._ledger:
                if h.kind == kind and h.id == resource_id:
                    return h
        return None

    def acquire(self, kind: ResourceKind, resource_id: str, acquire_fn: Callable[[], Any]) -> ResourceHandle:
        """Acquire a resource and record it.

        On failure nothing is recorded and the error propagates. An already
        active (kind, id) pair is returned as-is without re-acquiring.
        """

        with self._lock:
            if self._token is not None and self._token.cancelled:
                raise BuildInterrupted(self._token.reason)

            existing = self.find(kind, resource_id)
            if existing is not None:
                logger.debug("Resource already held: %s %s", kind.value, resource_id)
                return existing

            value = acquire_fn()
            handle = ResourceHandle(id=resource_id, kind=kind, acquire_order=next(self._seq), value=value)
            self._ledger.append(handle)
            logger.info("Acquired %s %s (#%d)", kind.value, resource_id, handle.acquire_order)
            return handle

    def mark(self) -> int:
        """Return the acquire_order of the newest active handle (0 when empty)."""

        with self._lock:
            return self._ledger[-1].acquire_order if self._ledger else 0

    def release_all(self) -> ReleaseReport:
        """Release every handle in LIFO order; idempotent."""

        return self.release_above(0)

    def release_above(self, mark: int) -> ReleaseReport:
        """Release, LIFO, every handle acquired after `mark`."""

        report = ReleaseReport()
        with self._lock:
            if self._unwinding:
                logger.warning("Release requested while an unwind is already in progress; ignoring")
                return report
            self._unwinding = True
            try:
                while self._ledger and self._ledger[-1].acquire_order > mark:
                    handle = self._ledger.pop()
                    failure = self._release_one(handle)
                    if failure is None:
                        report.released.append(handle)
                    else:
                        self._abandoned.append(handle)
                        report.failures.append(failure)
            finally:
                self._unwinding = False

        if report.failures:
            logger.error(
                "Teardown left %d resource(s) attached: %s",
                len(report.failures),
                ", ".join(f.handle.id for f in report.failures),
            )
        return report

    def _release_one(self, handle: ResourceHandle) -> Optional[ReleaseFailure]:
        releaser = self._releasers.get(handle.kind)
        if releaser is None:
            handle.status = HandleStatus.RELEASE_FAILED
            return ReleaseFailure(handle=handle, modes_tried=[], error=f"no releaser for {handle.kind.value}")

        handle.status = HandleStatus.RELEASING
        modes = list(self._escalation)
        tried: List[str] = []
        last_error = ""

        for i, mode in enumerate(modes):
            if self._token is not None and self._token.urgent and i < len(modes) - 1:
                # Shutdown was requested twice; go straight to the final mode.
                continue
            if tried:
                self._sleep(self._pause_s)
            tried.append(mode.value)
            try:
                releaser.release(handle, mode)
            except SessionIntegrityViolation as e:
                logger.critical("%s", e)
                handle.status = HandleStatus.RELEASE_FAILED
                return ReleaseFailure(handle=handle, modes_tried=tried, error=str(e), integrity_violation=True)
            except Exception as e:
                last_error = str(e)
                logger.warning("Release of %s %s failed (%s): %s", handle.kind.value, handle.id, mode.value, e)
                continue

            handle.status = HandleStatus.RELEASED
            logger.info("Released %s %s (%s)", handle.kind.value, handle.id, mode.value)
            return None

        handle.status = HandleStatus.RELEASE_FAILED
        return ReleaseFailure(handle=handle, modes_tried=tried, error=last_error)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Serializable view of the active ledger for checkpoints."""

        with self._lock:
            return [h.to_dict() for h in self._ledger]

    def adopt(self, entries: Iterable[Mapping[str, Any]]) -> List[ResourceHandle]:
        """Re-register handles recorded by a previous run, oldest first.

        The acquire function is not invoked; the resources are assumed to be
        still attached.
        """

        adopted: List[ResourceHandle] = []
        with self._lock:
            for e in sorted(entries, key=lambda x: int(x.get("acquire_order") or 0)):
                kind = ResourceKind(e["kind"])
                if self.find(kind, e["id"]) is not None:
                    continue
                handle = ResourceHandle(
                    id=str(e["id"]),
                    kind=kind,
                    acquire_order=next(self._seq),
                    value=e.get("value"),
                )
                self._ledger.append(handle)
                adopted.append(handle)
        if adopted:
            logger.info("Adopted %d resource(s) from checkpoint", len(adopted))
        return adopted
