from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence, Tuple

from .command import CmdResult, run_cmd
from .mounts import bind_mount, mount_pseudo, validate_chroot
from .resources import ResourceHandle, ResourceKind, ResourceTracker

logger = logging.getLogger(__name__)

# (kind, source, fstype, relative target, options), acquired in this order.
ESSENTIAL_MOUNTS: Sequence[Tuple[ResourceKind, str, str, str, str]] = (
    (ResourceKind.BIND_MOUNT, "/dev", "", "dev", ""),
    (ResourceKind.PSEUDO_FS_MOUNT, "devpts", "devpts", "dev/pts", "gid=5,mode=620"),
    (ResourceKind.PSEUDO_FS_MOUNT, "proc", "proc", "proc", ""),
    (ResourceKind.PSEUDO_FS_MOUNT, "sysfs", "sysfs", "sys", ""),
    (ResourceKind.PSEUDO_FS_MOUNT, "tmpfs", "tmpfs", "run", "mode=755"),
)

CHROOT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "LC_ALL": "C",
    "LANG": "C",
}


def chroot_cmd(target_root: str, argv: Sequence[str], *, dry_run: bool = False, timeout_s: float | None = None) -> CmdResult:
    """Run a command inside target root."""

    return run_cmd(["chroot", target_root, *argv], env=CHROOT_ENV, timeout_s=timeout_s, dry_run=dry_run)


def mount_chroot_binds(tracker: ResourceTracker, target_root: str, *, dry_run: bool = False) -> List[ResourceHandle]:
    """Mount the pseudo filesystems apt, grub-install and initramfs tooling need,
    then open the chroot session on top of them.

    Already-held mounts (e.g. adopted on resume) are not mounted again.
    """

    root = Path(target_root)
    handles: List[ResourceHandle] = []
    for kind, source, fstype, rel, options in ESSENTIAL_MOUNTS:
        dst = str(root / rel)
        if kind == ResourceKind.BIND_MOUNT:
            fn = lambda s=source, d=dst: bind_mount(s, d, dry_run=dry_run)
        else:
            fn = lambda f=fstype, s=source, d=dst, o=options: mount_pseudo(f, s, d, options=o, dry_run=dry_run)
        handles.append(tracker.acquire(kind, dst, fn))

    handles.append(
        tracker.acquire(
            ResourceKind.CHROOT_SESSION,
            str(root),
            lambda: target_root if dry_run else validate_chroot(target_root),
        )
    )
    return handles
