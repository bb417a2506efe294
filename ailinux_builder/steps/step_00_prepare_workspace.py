from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Sequence

from ..context import BuildContext
from ..errors import PermissionDeniedError, ValidationFailedError

logger = logging.getLogger(__name__)


def check_privileges(*, dry_run: bool = False) -> None:
    if os.geteuid() == 0:
        return
    if dry_run:
        logger.warning("Not running as root; a real build would stop here")
        return
    raise PermissionDeniedError("Root privileges are required for mounts, chroot and loop devices")


def check_host_tools(tools: Sequence[str], *, dry_run: bool = False) -> None:
    missing = [t for t in tools if shutil.which(t) is None]
    if not missing:
        return
    if dry_run:
        logger.warning("Missing host tools (ignored in dry-run): %s", ", ".join(missing))
        return
    raise ValidationFailedError(f"Missing required host tools: {', '.join(missing)}")


class PrepareWorkspaceStep:
    step_id = "00_prepare_workspace"

    def run(self, ctx: BuildContext) -> None:
        if ctx.dry_run:
            logger.info("Would create %s and %s", ctx.cfg.work_dir, ctx.output_dir)
        else:
            for d in (Path(ctx.cfg.work_dir), ctx.output_dir, ctx.iso_dir / "boot/grub"):
                d.mkdir(parents=True, exist_ok=True)

        ctx.run_op("check_privileges", lambda: check_privileges(dry_run=ctx.dry_run), critical=True)
        ctx.run_op(
            "check_host_tools",
            lambda: check_host_tools(ctx.cfg.required_tools, dry_run=ctx.dry_run),
            critical=True,
        )
        logger.info("Workspace ready: %s", ctx.cfg.work_dir)
