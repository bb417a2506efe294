from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..errors import ValidationFailedError
from .command import run_cmd

logger = logging.getLogger(__name__)

ISOHYBRID_MBR = "/usr/lib/ISOLINUX/isohdpfx.bin"

# Pseudo filesystem contents and the EFI image mount never belong in the live image.
SQUASHFS_EXCLUDES = ("boot/efi/*", "proc/*", "sys/*", "dev/*", "run/*", "tmp/*")

CHECKSUM_FILES = {"sha256": "SHA256SUMS", "md5": "MD5SUMS"}


def create_squashfs(root: str, dest: str, *, dry_run: bool = False) -> None:
    if not dry_run:
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
    run_cmd(
        ["mksquashfs", root, dest, "-noappend", "-comp", "xz", "-wildcards", "-e", *SQUASHFS_EXCLUDES],
        dry_run=dry_run,
    )


def _newest(boot: Path, pattern: str) -> Optional[Path]:
    found = sorted(boot.glob(pattern))
    return found[-1] if found else None


def copy_kernel(root: str, dest: str, *, dry_run: bool = False) -> None:
    """Copy the newest kernel/initrd pair from the staged /boot to `dest`."""

    boot = Path(root) / "boot"
    if dry_run:
        logger.info("Would copy kernel and initrd from %s to %s", boot, dest)
        return
    vmlinuz = _newest(boot, "vmlinuz-*")
    initrd = _newest(boot, "initrd.img-*")
    if vmlinuz is None or initrd is None:
        raise ValidationFailedError(f"No kernel/initrd found under {boot}")
    out = Path(dest)
    out.mkdir(parents=True, exist_ok=True)
    shutil.copy2(vmlinuz, out / "vmlinuz")
    shutil.copy2(initrd, out / "initrd")
    logger.info("Copied %s and %s", vmlinuz.name, initrd.name)


def write_disk_info(iso_dir: str, text: str, *, dry_run: bool = False) -> None:
    if dry_run:
        return
    p = Path(iso_dir) / ".disk/info"
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text + "\n", encoding="utf-8")


def xorriso_argv(
    *,
    iso_dir: str,
    output: str,
    volume_label: str,
    bios: bool,
    efi: bool,
    isohybrid_mbr: Optional[str] = None,
) -> List[str]:
    """El Torito entries: BIOS when ISOLINUX is in the tree, EFI when the EFI image is usable."""

    if not bios and not efi:
        raise ValidationFailedError("No bootable El Torito entry: neither ISOLINUX nor a valid EFI image")

    argv = [
        "xorriso",
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-volid",
        volume_label,
        "-output",
        output,
    ]
    if bios:
        argv += [
            "-eltorito-boot",
            "isolinux/isolinux.bin",
            "-eltorito-catalog",
            "isolinux/boot.cat",
            "-no-emul-boot",
            "-boot-load-size",
            "4",
            "-boot-info-table",
        ]
        if isohybrid_mbr:
            argv += ["-isohybrid-mbr", isohybrid_mbr]
    if efi:
        if bios:
            argv.append("-eltorito-alt-boot")
        argv += ["-e", "boot/grub/efi.img", "-no-emul-boot"]
        if bios and isohybrid_mbr:
            argv.append("-isohybrid-gpt-basdat")
    argv.append(iso_dir)
    return argv


def build_iso(
    *,
    iso_dir: str,
    output: str,
    volume_label: str,
    bios: bool,
    efi: bool,
    dry_run: bool = False,
) -> None:
    mbr = ISOHYBRID_MBR if Path(ISOHYBRID_MBR).is_file() else None
    argv = xorriso_argv(iso_dir=iso_dir, output=output, volume_label=volume_label, bios=bios, efi=efi, isohybrid_mbr=mbr)
    if not dry_run:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
    run_cmd(argv, dry_run=dry_run)


def file_digest(path: Path, algo: str) -> str:
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def write_checksums(out_dir: str, files: Sequence[Path]) -> List[Path]:
    """Write SHA256SUMS and MD5SUMS (sha256sum/md5sum format) for `files`."""

    written: List[Path] = []
    for algo, name in CHECKSUM_FILES.items():
        lines = [f"{file_digest(p, algo)}  {p.name}" for p in sorted(files)]
        sums = Path(out_dir) / name
        sums.write_text("\n".join(lines) + "\n", encoding="utf-8")
        written.append(sums)
        logger.info("Wrote %s (%d file(s))", sums, len(lines))
    return written


def parse_checksums(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2:
            out[parts[1].lstrip("*")] = parts[0].lower()
    return out


def verify_checksums(sums_path: str, algo: str) -> int:
    """Recompute every entry in a sums file; raises on the first mismatch."""

    sums = Path(sums_path)
    entries = parse_checksums(sums.read_text(encoding="utf-8"))
    for name, expected in entries.items():
        target = sums.parent / name
        if not target.is_file():
            raise ValidationFailedError(f"{name} listed in {sums.name} is missing")
        actual = file_digest(target, algo)
        if actual != expected:
            raise ValidationFailedError(f"checksum mismatch for {name}: {actual} != {expected}")
    logger.info("%s verified (%d file(s))", sums.name, len(entries))
    return len(entries)
