from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .command import run_cmd

logger = logging.getLogger(__name__)

PROC = Path("/proc")


def parent_pid(pid: int) -> Optional[int]:
    """Return the parent PID from /proc/<pid>/stat, or None if unreadable."""

    try:
        stat = (PROC / str(pid) / "stat").read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return None
    # comm (field 2) may contain spaces and parentheses; split after the last ')'.
    rest = stat.rsplit(")", 1)[-1].split()
    if len(rest) < 2:
        return None
    try:
        return int(rest[1])
    except ValueError:
        return None


def count_user_processes(uid: Optional[int] = None) -> int:
    """Count processes owned by `uid` (default: current real uid)."""

    uid = os.getuid() if uid is None else uid
    n = 0
    for entry in PROC.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            if entry.stat().st_uid == uid:
                n += 1
        except OSError:
            continue
    return n


def pids_using(path: str, *, dry_run: bool = False) -> List[int]:
    """PIDs with open files on the filesystem mounted at `path` (fuser -m)."""

    if dry_run:
        return []
    try:
        r = run_cmd(["fuser", "-m", path], check=False)
    except FileNotFoundError:
        logger.debug("fuser not available; cannot list holders of %s", path)
        return []
    # fuser prints PIDs on stdout and the path plus access flags on stderr.
    return sorted({int(p) for p in re.findall(r"\d+", r.stdout)})


def _process_roots() -> Iterator[Tuple[int, str]]:
    for entry in PROC.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            root = os.readlink(entry / "root")
        except OSError:
            continue
        yield int(entry.name), root


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def pids_rooted_in(root: str) -> List[int]:
    """PIDs whose root directory lies inside `root` (processes left in a chroot)."""

    target = os.path.realpath(root)
    return sorted({pid for pid, proc_root in _process_roots() if _within(proc_root, target)})


def pids_chrooted_over(path: str) -> List[int]:
    """PIDs chrooted into a directory that contains `path`.

    Processes whose root is the host's `/` are never included, so this only
    finds what runs inside a staged root above a bind or pseudo-fs mount.
    """

    target = os.path.realpath(path)
    return sorted({pid for pid, proc_root in _process_roots() if proc_root != "/" and _within(target, proc_root)})
