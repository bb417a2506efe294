from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    config_default: str = "build_config.yaml"
    state_default: str = "build/build_state.json"
    log_default: str = "logs/ailinux-build.log"
    report_default: str = "build/build_report.json"
    work_dir: str = "build/work"
    output_dir: str = "output"


PATHS = Paths()

# Host tools the build shells out to; checked before anything is staged.
REQUIRED_TOOLS = (
    "debootstrap",
    "chroot",
    "mount",
    "umount",
    "losetup",
    "mkfs.vfat",
    "mksquashfs",
    "xorriso",
)
