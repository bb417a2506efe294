from __future__ import annotations

import logging

from ..context import BuildContext
from ..lib.pkg import debootstrap_rootfs, is_bootstrapped, write_sources_list

logger = logging.getLogger(__name__)


class StageFilesystemStep:
    step_id = "10_stage_filesystem"

    def run(self, ctx: BuildContext) -> None:
        cfg = ctx.cfg
        root = str(ctx.chroot_dir)

        if is_bootstrapped(root):
            logger.info("Base system already present in %s; not bootstrapping again", root)
        else:
            ctx.run_op(
                "debootstrap",
                lambda: debootstrap_rootfs(
                    target_root=root,
                    suite=cfg.suite,
                    mirror=cfg.mirror,
                    arch=cfg.arch,
                    components=cfg.components,
                    dry_run=ctx.dry_run,
                ),
                critical=True,
                command=("debootstrap", cfg.suite, root, cfg.mirror),
            )

        write_sources_list(root, mirror=cfg.mirror, suite=cfg.suite, components=cfg.components, dry_run=ctx.dry_run)
        ctx.enter_chroot()
        logger.info("Root filesystem staged at %s", root)
