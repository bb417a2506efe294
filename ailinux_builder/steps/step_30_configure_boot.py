from __future__ import annotations

import logging

from ..context import BuildContext
from ..lib.bootloader import BootloaderInstaller, GrubEfiStrategy, IsolinuxStrategy, tier_plan, write_grub_cfg
from ..lib.pkg import apt_install
from ..lib.storage import EfiImageTarget

logger = logging.getLogger(__name__)


class ConfigureBootStep:
    step_id = "30_configure_boot"

    def run(self, ctx: BuildContext) -> None:
        cfg = ctx.cfg
        root = str(ctx.chroot_dir)
        ctx.enter_chroot()

        ctx.run_op(
            "install_boot_packages",
            lambda: apt_install(root, cfg.boot_packages, dry_run=ctx.dry_run),
            command=("apt-get", "install", *cfg.boot_packages),
        )
        if not ctx.dry_run:
            write_grub_cfg(ctx.iso_dir / "boot/grub/grub.cfg", title=cfg.image_title, cmdline=cfg.kernel_cmdline)

        target = EfiImageTarget(
            image_path=str(ctx.efi_image),
            mount_point=str(ctx.chroot_dir / cfg.efi_directory.lstrip("/")),
            size_mib=cfg.efi_image_size_mib,
            min_size_mib=cfg.efi_image_min_mib,
            label=cfg.efi_label,
            dry_run=ctx.dry_run,
        )
        if target.validate() is not None:
            ctx.run_op("create_efi_image", target.create, command=("mkfs.vfat", str(ctx.efi_image)))

        installer = BootloaderInstaller(
            engine=ctx.engine,
            tracker=ctx.tracker,
            target=target,
            strategies={
                "grub": GrubEfiStrategy(root, bootloader_id=cfg.bootloader_id, dry_run=ctx.dry_run),
                "isolinux": IsolinuxStrategy(
                    str(ctx.iso_dir),
                    search_roots=(root, "/"),
                    title=cfg.image_title,
                    cmdline=cfg.kernel_cmdline,
                    dry_run=ctx.dry_run,
                ),
            },
            tiers=tier_plan(cfg.efi_directory),
            repair_budget=cfg.boot_repair_budget,
        )
        try:
            attempts = installer.run()
        finally:
            ctx.report.boot_attempts = list(installer.attempts)
            ctx.report.releases.extend(installer.release_report)

        winner = attempts[-1]
        ctx.state["boot"] = {
            "tier": winner.tier.value,
            "bootloader": winner.parameters.bootloader,
            "efi": winner.parameters.bootloader == "grub" and not winner.degraded,
        }
