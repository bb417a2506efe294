from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import ValidationFailedError
from .command import run_cmd
from .mounts import attach_loop, mount_device
from .resources import ReleaseReport, ResourceKind, ResourceTracker

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# FAT boot sectors end in 0x55AA and name their type at fixed offsets.
_BOOT_SIGNATURE = b"\x55\xaa"
_FAT_TYPE_OFFSETS = (54, 82)  # FAT12/16, FAT32


def create_esp_image(path: str, *, size_mib: int = 64, label: str = "AILINUX_EFI", dry_run: bool = False) -> None:
    """Create (or overwrite) a FAT-formatted EFI system image file."""

    if not dry_run:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    run_cmd(["dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={size_mib}", "status=none"], dry_run=dry_run)
    run_cmd(["mkfs.vfat", "-n", label[:11], path], dry_run=dry_run)


def is_fat_image(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(512)
    except OSError:
        return False
    if len(head) < 512 or head[510:512] != _BOOT_SIGNATURE:
        return False
    return any(head[o : o + 3] == b"FAT" for o in _FAT_TYPE_OFFSETS)


def check_esp_image(path: str, *, min_size_mib: int) -> Optional[str]:
    """Return a description of what is wrong with an EFI image file, or None."""

    p = Path(path)
    if not p.is_file():
        return f"EFI image missing: {p}"
    size = p.stat().st_size
    if size < min_size_mib * MIB:
        return f"EFI image too small: {size} bytes < {min_size_mib} MiB"
    if not is_fat_image(str(p)):
        return f"EFI image is not FAT formatted: {p}"
    return None


@dataclass
class EfiImageTarget:
    """The EFI system image GRUB is installed into, mounted inside the chroot.

    validate() checks existence, FAT type and minimum size. open() attaches
    and mounts it through the tracker; close() releases just those handles.
    """

    image_path: str
    mount_point: str
    size_mib: int = 64
    min_size_mib: int = 10
    label: str = "AILINUX_EFI"
    dry_run: bool = False

    def validate(self) -> Optional[str]:
        """Return a description of what is wrong, or None when usable."""

        if self.dry_run:
            return None
        return check_esp_image(self.image_path, min_size_mib=self.min_size_mib)

    def require_valid(self) -> None:
        problem = self.validate()
        if problem is not None:
            raise ValidationFailedError(problem)

    def create(self) -> None:
        create_esp_image(self.image_path, size_mib=self.size_mib, label=self.label, dry_run=self.dry_run)

    def open(self, tracker: ResourceTracker) -> None:
        loop = tracker.acquire(
            ResourceKind.LOOP_ATTACH,
            self.image_path,
            lambda: attach_loop(self.image_path, dry_run=self.dry_run),
        )
        tracker.acquire(
            ResourceKind.DEVICE_MOUNT,
            self.mount_point,
            lambda: mount_device(str(loop.value), self.mount_point, fstype="vfat", dry_run=self.dry_run),
        )

    def close(self, tracker: ResourceTracker) -> ReleaseReport:
        loop = tracker.find(ResourceKind.LOOP_ATTACH, self.image_path)
        if loop is None:
            mount = tracker.find(ResourceKind.DEVICE_MOUNT, self.mount_point)
            if mount is None:
                return ReleaseReport()
            return tracker.release_above(mount.acquire_order - 1)
        return tracker.release_above(loop.acquire_order - 1)

    def repair(self, tracker: ResourceTracker) -> None:
        """Recreate the image from scratch and mount it again."""

        report = self.close(tracker)
        if not report.ok:
            raise ValidationFailedError(f"EFI image still attached; cannot recreate {self.image_path}")
        logger.warning("Recreating EFI image %s (%d MiB)", self.image_path, self.size_mib)
        self.create()
        self.require_valid()
        self.open(tracker)
