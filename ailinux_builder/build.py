from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from .build_config import load_build_config, resolve_failure_mode
from .lib.env import PATHS
from .logging_utils import configure_logging
from .pipeline import BuildOrchestrator, ExitCode

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ailinux-build", description="Build a bootable AILinux live ISO.")
    p.add_argument("--config", default=None, help=f"Build config (YAML); default {PATHS.config_default} if present")
    p.add_argument("--state", default=PATHS.state_default, help="Checkpoint path (json|yaml)")
    p.add_argument("--log", default=PATHS.log_default, help="Build log; warnings are mirrored to <log>.errors")
    p.add_argument("--report", default=PATHS.report_default, help="Build report (JSON)")
    p.add_argument("--dry-run", action="store_true", help="Log commands without running them")
    p.add_argument("--debug", action="store_true", help="Log command output and operation records")
    p.add_argument("--skip-cleanup", action="store_true", help="Leave mounts attached after the build (for --resume)")
    p.add_argument("--strict", action="store_true", help="Abort on the first escalated failure")
    p.add_argument("--resume", action="store_true", help="Skip phases completed in the checkpoint")
    p.add_argument("--stop-after", default=None, help="Stop after phase_id (e.g. 20_install_software)")
    return p


def run_build(args: argparse.Namespace) -> int:
    configure_logging(log_path=args.log, level=logging.DEBUG if args.debug else logging.INFO)

    if args.config:
        cfg = load_build_config(args.config)
    else:
        cfg = load_build_config(PATHS.config_default, required=False)
        if not Path(PATHS.config_default).exists():
            logger.info("No %s found; using built-in defaults", PATHS.config_default)

    failure_mode = resolve_failure_mode(strict_flag=bool(args.strict), cfg=cfg)
    logger.info("Failure mode: %s%s", failure_mode, " (dry-run)" if args.dry_run else "")

    orchestrator = BuildOrchestrator(
        cfg,
        state_path=args.state,
        report_path=args.report,
        failure_mode=failure_mode,
        dry_run=bool(args.dry_run),
        skip_cleanup=bool(args.skip_cleanup),
        resume=bool(args.resume),
        stop_after=args.stop_after,
    )
    return orchestrator.run()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run_build(args)
    except (FileNotFoundError, ValueError, RuntimeError) as e:
        # Config/argument problems detected before anything was acquired.
        logger.error("%s", e)
        return int(ExitCode.FAILED)


if __name__ == "__main__":
    raise SystemExit(main())
