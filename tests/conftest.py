"""
Pytest configuration and shared fixtures for ailinux-builder tests.

Nothing here mounts, attaches or chroots for real: resources are released by
a recording fake and external commands are either dry-run or patched.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import Mock

import pytest

from ailinux_builder.errors import ResourceBusyError
from ailinux_builder.lib.cancellation import CancellationToken
from ailinux_builder.lib.recovery import DEFAULT_POLICIES, RecoveryEngine
from ailinux_builder.lib.resources import ReleaseMode, ResourceHandle, ResourceKind, ResourceTracker
from ailinux_builder.lib.session import SessionGuard


class RecordingReleaser:
    """Releaser fake that records (id, mode) calls.

    `fail` maps a resource id to either a set of modes that raise
    ResourceBusyError, or an exception instance raised for every mode.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ReleaseMode]] = []
        self.fail: Dict[str, Any] = {}

    def release(self, handle: ResourceHandle, mode: ReleaseMode) -> None:
        self.calls.append((handle.id, mode))
        behaviour = self.fail.get(handle.id)
        if behaviour is None:
            return
        if isinstance(behaviour, BaseException):
            raise behaviour
        if mode in behaviour:
            raise ResourceBusyError(f"{handle.id}: target is busy")

    @property
    def released_ids(self) -> List[str]:
        return [rid for rid, _ in self.calls]


# ==============================================================================
# Core fixtures
# ==============================================================================


@pytest.fixture
def token() -> CancellationToken:
    """Fixture providing a fresh cancellation token."""
    return CancellationToken()


@pytest.fixture
def releaser() -> RecordingReleaser:
    return RecordingReleaser()


@pytest.fixture
def sleeps() -> List[float]:
    """Pauses requested by the tracker between release escalations."""
    return []


@pytest.fixture
def tracker(releaser, token, sleeps) -> ResourceTracker:
    """Fixture providing a tracker whose every kind is released by the recording fake."""
    return ResourceTracker(
        releasers={kind: releaser for kind in ResourceKind},
        token=token,
        pause_s=0.5,
        sleep=sleeps.append,
    )


@pytest.fixture
def fast_policies():
    """Default retry counts with all delays zeroed."""
    return {category: replace(policy, delay_s=0.0) for category, policy in DEFAULT_POLICIES.items()}


@pytest.fixture
def engine(token, fast_policies) -> RecoveryEngine:
    return RecoveryEngine(token=token, policies=fast_policies)


@pytest.fixture
def guard(tracker, token) -> SessionGuard:
    """SessionGuard with a local-console session and a fake kill()."""
    return SessionGuard(
        tracker=tracker,
        token=token,
        environ={},
        isatty=lambda: True,
        count_processes=lambda: 100,
        kill=Mock(),
    )


@pytest.fixture
def acquire(tracker):
    """Fixture providing a helper that acquires placeholder resources in order."""

    def _acquire(*ids: str, kind: Optional[ResourceKind] = None) -> List[ResourceHandle]:
        k = kind or ResourceKind.BIND_MOUNT
        return [tracker.acquire(k, rid, lambda rid=rid: rid) for rid in ids]

    return _acquire
