from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from .chroot import chroot_cmd
from .command import run_cmd

logger = logging.getLogger(__name__)


def debootstrap_rootfs(
    *,
    target_root: str,
    suite: str = "noble",
    mirror: str = "http://archive.ubuntu.com/ubuntu",
    arch: str | None = None,
    components: Sequence[str] = (),
    dry_run: bool = False,
) -> None:
    argv = ["debootstrap"]
    if arch:
        argv += ["--arch", arch]
    if components:
        argv.append("--components=" + ",".join(components))
    argv += [suite, target_root, mirror]
    if not dry_run:
        Path(target_root).mkdir(parents=True, exist_ok=True)
    run_cmd(argv, dry_run=dry_run)


def is_bootstrapped(target_root: str) -> bool:
    root = Path(target_root)
    return (root / "etc/os-release").exists() and (root / "usr/bin/apt-get").exists()


def write_sources_list(
    target_root: str,
    *,
    mirror: str,
    suite: str,
    components: Sequence[str],
    dry_run: bool = False,
) -> None:
    comps = " ".join(components) or "main"
    contents = (
        f"deb {mirror} {suite} {comps}\n"
        f"deb {mirror} {suite}-updates {comps}\n"
        f"deb {mirror} {suite}-security {comps}\n"
    )
    p = Path(target_root) / "etc/apt/sources.list"
    if not dry_run:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(contents, encoding="utf-8")
    logger.info("Configured apt sources: %s %s (%s)", mirror, suite, comps)


def apt_update(target_root: str, *, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["apt-get", "update"], dry_run=dry_run)


def apt_install(
    target_root: str,
    packages: Sequence[str],
    *,
    with_recommends: bool = False,
    dry_run: bool = False,
) -> None:
    if not packages:
        return
    argv = [
        "apt-get",
        "install",
        "-y",
    ]
    if not with_recommends:
        argv.append("--no-install-recommends")
    chroot_cmd(
        target_root,
        [*argv, *packages],
        dry_run=dry_run,
    )


def apt_fix_broken(target_root: str, *, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["dpkg", "--configure", "-a"], dry_run=dry_run)
    chroot_cmd(target_root, ["apt-get", "--fix-broken", "install", "-y"], dry_run=dry_run)


def apt_clean(target_root: str, *, dry_run: bool = False) -> None:
    chroot_cmd(target_root, ["apt-get", "clean"], dry_run=dry_run)
    lists = Path(target_root) / "var/lib/apt/lists"
    if not dry_run and lists.is_dir():
        for p in lists.glob("*_Packages*"):
            p.unlink()


def write_package_manifest(target_root: str, dest: str, *, dry_run: bool = False) -> None:
    """Record installed packages (name<TAB>version) next to the squashfs."""

    r = chroot_cmd(target_root, ["dpkg-query", "-W", "--showformat=${Package}\t${Version}\n"], dry_run=dry_run)
    if not dry_run:
        Path(dest).write_text(r.stdout, encoding="utf-8")
