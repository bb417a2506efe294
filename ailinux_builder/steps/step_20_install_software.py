from __future__ import annotations

import logging

from ..context import BuildContext
from ..lib.pkg import apt_clean, apt_install, apt_update

logger = logging.getLogger(__name__)


class InstallSoftwareStep:
    step_id = "20_install_software"

    def run(self, ctx: BuildContext) -> None:
        cfg = ctx.cfg
        root = str(ctx.chroot_dir)
        ctx.enter_chroot()

        ctx.run_op("apt_update", lambda: apt_update(root, dry_run=ctx.dry_run), command=("apt-get", "update"))

        # Kernel and live tooling are what make the image bootable at all.
        required = [*cfg.base_packages, *cfg.kernel_packages, *cfg.live_packages]
        ctx.run_op(
            "install_base_packages",
            lambda: apt_install(root, required, dry_run=ctx.dry_run),
            critical=True,
            command=("apt-get", "install", *required),
        )

        for group, packages in cfg.optional_packages.items():
            ctx.run_op(
                f"install_optional_{group}",
                lambda p=packages: apt_install(root, p, with_recommends=True, dry_run=ctx.dry_run),
                command=("apt-get", "install", *packages),
            )

        ctx.run_op("apt_clean", lambda: apt_clean(root, dry_run=ctx.dry_run))
        logger.info("Software installed into %s", root)
