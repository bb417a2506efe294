from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TypeVar

from .build_config import BuildConfig
from .lib.cancellation import CancellationToken
from .lib.chroot import mount_chroot_binds
from .lib.classifier import Category, OperationDescriptor
from .lib.recovery import OperationFailure, RecoveryEngine, RetryPolicy
from .lib.resources import ReleaseReport, ResourceKind, ResourceTracker
from .report import BuildReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BuildContext:
    """What every phase gets: config, the run's tracker/engine/token, the
    mutable checkpoint state and the report being assembled."""

    cfg: BuildConfig
    tracker: ResourceTracker
    engine: RecoveryEngine
    token: CancellationToken
    state: Dict[str, Any]
    report: BuildReport
    dry_run: bool = False

    @property
    def chroot_dir(self) -> Path:
        return Path(self.cfg.chroot_dir)

    @property
    def iso_dir(self) -> Path:
        return Path(self.cfg.iso_dir)

    @property
    def output_dir(self) -> Path:
        return Path(self.cfg.output_dir)

    @property
    def efi_image(self) -> Path:
        return self.iso_dir / "boot/grub/efi.img"

    def run_op(
        self,
        name: str,
        action: Callable[[], T],
        *,
        critical: bool = False,
        command: Sequence[str] = (),
        attrs: Optional[Mapping[str, Any]] = None,
        policy_override: Optional[Mapping[Category, RetryPolicy]] = None,
    ) -> Optional[T]:
        """Run one fallible operation through the recovery engine.

        An escalated non-critical operation is recorded and skipped in
        graceful mode (returns None); everything else propagates.
        """

        descriptor = OperationDescriptor(name=name, command=tuple(command), critical=critical, attrs=dict(attrs or {}))
        try:
            return self.engine.run(descriptor, action, policy_override=policy_override, tracker=self.tracker)
        except OperationFailure as e:
            if e.graceful and not critical:
                self.report.failures.append(e)
                logger.warning("Continuing without %s (graceful mode)", name)
                return None
            raise

    def enter_chroot(self) -> None:
        """Mount the chroot's essential filesystems and open the session (idempotent)."""

        handles = self.run_op(
            "mount_essential_filesystems",
            lambda: mount_chroot_binds(self.tracker, str(self.chroot_dir), dry_run=self.dry_run),
            critical=True,
        )
        if handles:
            first = handles[0]
            self.state.setdefault("marks", {})["chroot"] = {"kind": first.kind.value, "id": first.id}

    def leave_chroot(self) -> ReleaseReport:
        """Release everything acquired since enter_chroot(), newest first."""

        mark = (self.state.get("marks") or {}).get("chroot")
        handle = self.tracker.find(ResourceKind(mark["kind"]), mark["id"]) if mark else None
        if handle is None:
            return ReleaseReport()
        released = self.tracker.release_above(handle.acquire_order - 1)
        self.report.releases.extend(released)
        return released
