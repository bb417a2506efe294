from __future__ import annotations

import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from ..errors import CommandError, ResourceBusyError
from . import processes
from .command import run_cmd
from .resources import ReleaseMode, ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)

MOUNT_KINDS = (ResourceKind.BIND_MOUNT, ResourceKind.PSEUDO_FS_MOUNT, ResourceKind.DEVICE_MOUNT)
ALL_KINDS = (*MOUNT_KINDS, ResourceKind.LOOP_ATTACH, ResourceKind.CHROOT_SESSION)

# Directories a staged root must contain before we chroot into it.
CHROOT_REQUIRED_DIRS = ("usr", "etc", "bin", "var", "tmp")


def bind_mount(src: str, dst: str, *, dry_run: bool = False) -> str:
    if not dry_run:
        Path(dst).mkdir(parents=True, exist_ok=True)
    run_cmd(["mount", "--bind", src, dst], dry_run=dry_run)
    return dst


def mount_pseudo(fstype: str, device: str, target: str, *, options: str = "", dry_run: bool = False) -> str:
    if not dry_run:
        Path(target).mkdir(parents=True, exist_ok=True)
    argv = ["mount", "-t", fstype, device, target]
    if options:
        argv += ["-o", options]
    run_cmd(argv, dry_run=dry_run)
    return target


def attach_loop(image: str, *, dry_run: bool = False) -> str:
    """Attach `image` to the first free loop device and return its node."""

    r = run_cmd(["losetup", "--find", "--show", image], dry_run=dry_run)
    dev = (r.stdout or "").strip()
    if dry_run:
        return dev or "/dev/loop-dry-run"
    if not dev:
        raise CommandError(r.argv, r.returncode, r.stdout, "losetup did not report a device")
    return dev


def mount_device(dev: str, target: str, *, fstype: Optional[str] = None, dry_run: bool = False) -> str:
    if not dry_run:
        Path(target).mkdir(parents=True, exist_ok=True)
    argv = ["mount"]
    if fstype:
        argv += ["-t", fstype]
    run_cmd([*argv, dev, target], dry_run=dry_run)
    return target


def validate_chroot(root: str) -> str:
    """Check `root` looks like a staged system before entering it."""

    p = Path(root)
    if not p.is_dir():
        raise FileNotFoundError(f"Chroot directory does not exist: {root}")
    missing = [d for d in CHROOT_REQUIRED_DIRS if not (p / d).exists()]
    if len(missing) > 2:
        logger.warning("Chroot %s is missing essential directories: %s", root, ", ".join(missing))
    if not os.access(root, os.R_OK | os.X_OK):
        raise PermissionError(f"Insufficient permissions for chroot directory: {root}")
    return root


def _is_busy(e: CommandError) -> bool:
    text = f"{e.stderr}\n{e.stdout}".lower()
    return "busy" in text


class SystemReleaser:
    """Release mounts, loop devices and chroot sessions on the real system.

    Holder processes are only ever signalled through `signal_process`, which
    refuses protected session PIDs, after `filter_targets` has dropped them.
    """

    def __init__(
        self,
        *,
        filter_targets: Callable[[Iterable[int]], List[int]],
        signal_process: Callable[[int, int], bool],
        dry_run: bool = False,
        term_grace_s: float = 2.0,
        pids_using: Callable[..., List[int]] = processes.pids_using,
        pids_rooted_in: Callable[[str], List[int]] = processes.pids_rooted_in,
        pids_chrooted_over: Callable[[str], List[int]] = processes.pids_chrooted_over,
        is_mounted: Callable[[str], bool] = os.path.ismount,
    ) -> None:
        self._filter_targets = filter_targets
        self._signal_process = signal_process
        self.dry_run = dry_run
        self.term_grace_s = term_grace_s
        self._pids_using = pids_using
        self._pids_rooted_in = pids_rooted_in
        self._pids_chrooted_over = pids_chrooted_over
        self._is_mounted = is_mounted

    def release(self, handle: ResourceHandle, mode: ReleaseMode) -> None:
        if handle.kind in MOUNT_KINDS:
            self._release_mount(handle.id, handle.kind, mode)
        elif handle.kind == ResourceKind.LOOP_ATTACH:
            self._release_loop(str(handle.value or handle.id), mode)
        elif handle.kind == ResourceKind.CHROOT_SESSION:
            self._release_chroot(handle.id, mode)
        else:
            raise ValueError(f"Unsupported resource kind: {handle.kind}")

    def terminate_holders(self, pids: Sequence[int], sig: int) -> List[int]:
        """Signal non-protected holders; returns the PIDs actually signalled."""

        me = os.getpid()
        signalled: List[int] = []
        for pid in self._filter_targets(p for p in pids if p != me):
            logger.info("Sending %s to build process %d", signal.Signals(sig).name, pid)
            if self._signal_process(pid, sig):
                signalled.append(pid)
        return signalled

    def _mount_holders(self, path: str, kind: ResourceKind) -> List[int]:
        # Bind and pseudo-fs mounts share host filesystems; only chrooted processes hold them.
        if kind == ResourceKind.DEVICE_MOUNT:
            return self._pids_using(path)
        return self._pids_chrooted_over(path)

    def _release_mount(self, path: str, kind: ResourceKind, mode: ReleaseMode) -> None:
        if self.dry_run:
            run_cmd(["umount", path], dry_run=True)
            return
        if not self._is_mounted(path):
            logger.debug("%s is not mounted; nothing to release", path)
            return

        if mode == ReleaseMode.PLAIN:
            argv = ["umount", path]
        elif mode == ReleaseMode.FORCED:
            if self.terminate_holders(self._mount_holders(path, kind), signal.SIGTERM):
                time.sleep(self.term_grace_s)
            argv = ["umount", "-f", path]
        else:
            argv = ["umount", "-l", path]

        try:
            run_cmd(argv)
        except CommandError as e:
            if _is_busy(e):
                raise ResourceBusyError(f"{path} is busy") from e
            raise

    def _release_loop(self, dev: str, mode: ReleaseMode) -> None:
        if self.dry_run:
            run_cmd(["losetup", "-d", dev], dry_run=True)
            return
        if not Path(dev).exists():
            return
        if mode == ReleaseMode.FORCED:
            self.terminate_holders(self._pids_using(dev), signal.SIGKILL)
        try:
            run_cmd(["losetup", "-d", dev])
        except CommandError as e:
            text = f"{e.stderr}".lower()
            if "no such device" in text or "no such device or address" in text:
                return
            if _is_busy(e):
                raise ResourceBusyError(f"{dev} is busy") from e
            raise

    def _release_chroot(self, root: str, mode: ReleaseMode) -> None:
        if self.dry_run:
            return
        pids = self._pids_rooted_in(root)
        if not pids:
            return
        if mode == ReleaseMode.LAZY:
            raise ResourceBusyError(f"{len(pids)} process(es) still running inside {root}")

        sig = signal.SIGTERM if mode == ReleaseMode.PLAIN else signal.SIGKILL
        if self.terminate_holders(pids, sig):
            time.sleep(self.term_grace_s)
        remaining = self._filter_targets(self._pids_rooted_in(root))
        if remaining:
            raise ResourceBusyError(f"{len(remaining)} process(es) still running inside {root}")
