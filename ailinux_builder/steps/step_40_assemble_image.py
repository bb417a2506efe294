from __future__ import annotations

import logging

from ..context import BuildContext
from ..lib.image import build_iso, copy_kernel, create_squashfs, write_disk_info
from ..lib.pkg import write_package_manifest
from ..lib.storage import check_esp_image

logger = logging.getLogger(__name__)


class AssembleImageStep:
    step_id = "40_assemble_image"

    def run(self, ctx: BuildContext) -> None:
        cfg = ctx.cfg
        root = str(ctx.chroot_dir)
        casper = ctx.iso_dir / "casper"
        if not ctx.dry_run:
            casper.mkdir(parents=True, exist_ok=True)

        ctx.run_op(
            "write_package_manifest",
            lambda: write_package_manifest(root, str(casper / "filesystem.manifest"), dry_run=ctx.dry_run),
        )

        released = ctx.leave_chroot()
        if not released.ok:
            logger.error("Chroot mounts still attached; their contents are excluded from the image")

        ctx.run_op(
            "create_squashfs",
            lambda: create_squashfs(root, str(casper / "filesystem.squashfs"), dry_run=ctx.dry_run),
            critical=True,
            command=("mksquashfs", root),
        )
        ctx.run_op("copy_kernel", lambda: copy_kernel(root, str(casper), dry_run=ctx.dry_run), critical=True)
        write_disk_info(str(ctx.iso_dir), f"{cfg.image_title} {cfg.suite} {cfg.arch}", dry_run=ctx.dry_run)

        boot = ctx.state.get("boot") or {}
        bios = (ctx.iso_dir / "isolinux/isolinux.bin").is_file() or (
            ctx.dry_run and boot.get("bootloader") == "isolinux"
        )
        efi = bool(boot.get("efi")) and (
            ctx.dry_run or check_esp_image(str(ctx.efi_image), min_size_mib=cfg.efi_image_min_mib) is None
        )

        ctx.run_op(
            "create_iso",
            lambda: build_iso(
                iso_dir=str(ctx.iso_dir),
                output=cfg.iso_path,
                volume_label=cfg.volume_label,
                bios=bios,
                efi=efi,
                dry_run=ctx.dry_run,
            ),
            critical=True,
            command=("xorriso", "-output", cfg.iso_path),
        )
        ctx.report.outputs.append(cfg.iso_path)
        logger.info("Image assembled: %s (bios=%s efi=%s)", cfg.iso_path, bios, efi)
