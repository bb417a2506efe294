"""Composition root: sequences the build phases and owns teardown.

Phases run in order with resume semantics (completed phases recorded in the
checkpoint are skipped). Whatever ends the run, success, escalated failure,
exhausted boot tiers or a termination signal, the resource ledger is unwound
LIFO before the exit code is chosen.
"""

from __future__ import annotations

import logging
import time
from enum import IntEnum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .build_config import BuildConfig
from .build_state import ensure_build_defaults, is_completed, load_build_state, mark_completed, write_checkpoint
from .context import BuildContext
from .errors import BootloaderTierExhaustedError, BuildInterrupted, ReleaseFailedError, SessionIntegrityViolation
from .lib import net, pkg
from .lib.background import PeriodicTask, privilege_keepalive
from .lib.cancellation import CancellationToken
from .lib.diagnostics import advisor_from_config
from .lib.mounts import ALL_KINDS, SystemReleaser
from .lib.recovery import FailureMode, OperationFailure, RecoveryEngine, policies_from_config
from .lib.resources import ReleaseMode, ReleaseReport, ResourceTracker
from .lib.session import SessionGuard
from .report import BuildReport, write_report

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    FAILED = 1
    BOOT_EXHAUSTED = 3
    RELEASE_FAILED = 4
    INTERRUPTED = 130


class Step(Protocol):
    """One build phase; must tolerate being re-run after a resume."""

    step_id: str

    def run(self, ctx: BuildContext) -> None:
        ...


def default_steps() -> List[Step]:
    from .steps import (
        AssembleImageStep,
        ConfigureBootStep,
        InstallSoftwareStep,
        PackageOutputsStep,
        PrepareWorkspaceStep,
        StageFilesystemStep,
    )

    return [
        PrepareWorkspaceStep(),
        StageFilesystemStep(),
        InstallSoftwareStep(),
        ConfigureBootStep(),
        AssembleImageStep(),
        PackageOutputsStep(),
    ]


class BuildOrchestrator:
    def __init__(
        self,
        cfg: BuildConfig,
        *,
        state_path: str,
        report_path: Optional[str] = None,
        steps: Optional[Sequence[Step]] = None,
        failure_mode: str = "graceful",
        dry_run: bool = False,
        skip_cleanup: bool = False,
        resume: bool = False,
        stop_after: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        tracker: Optional[ResourceTracker] = None,
        guard: Optional[SessionGuard] = None,
        engine: Optional[RecoveryEngine] = None,
        background: bool = True,
        install_signal_handlers: bool = True,
    ) -> None:
        self.cfg = cfg
        self.state_path = state_path
        self.report_path = report_path
        self.steps = list(steps) if steps is not None else default_steps()
        self.dry_run = dry_run
        self.skip_cleanup = skip_cleanup
        self.resume = resume
        self.stop_after = stop_after
        self.background = background
        self.install_signal_handlers = install_signal_handlers

        step_ids = [s.step_id for s in self.steps]
        if stop_after is not None and stop_after not in step_ids:
            raise ValueError(f"Unknown phase for --stop-after: {stop_after} (known: {', '.join(step_ids)})")

        self.token = token or CancellationToken()
        self.tracker = tracker or ResourceTracker(
            token=self.token,
            escalation=[ReleaseMode(m) for m in cfg.release_escalation],
            pause_s=cfg.release_pause_s,
        )
        self.guard = guard or SessionGuard(tracker=self.tracker, token=self.token)
        if tracker is None:
            self.tracker.register_releaser(
                ALL_KINDS,
                SystemReleaser(
                    filter_targets=self.guard.filter_targets,
                    signal_process=self.guard.signal_process,
                    dry_run=dry_run,
                    term_grace_s=cfg.holder_grace_s,
                ),
            )
        self.engine = engine or RecoveryEngine(
            token=self.token,
            policies=policies_from_config(cfg.recovery_policies),
            failure_mode=FailureMode(failure_mode),
            advisor=advisor_from_config(cfg.diagnostics),
        )
        self.report = BuildReport(failure_mode=self.engine.failure_mode.value, dry_run=dry_run)

    # -- setup ------------------------------------------------------------

    def _load_state(self) -> Dict[str, Any]:
        if not self.resume:
            return ensure_build_defaults({})
        state = ensure_build_defaults(load_build_state(self.state_path))
        if state["completed_phases"]:
            logger.info("Resuming; completed phases: %s", ", ".join(state["completed_phases"]))
        self.tracker.adopt(state.get("ledger") or [])
        return state

    def _register_remediations(self, ctx: BuildContext) -> None:
        chroot = str(ctx.chroot_dir)
        host = net.mirror_host(self.cfg.mirror) or "archive.ubuntu.com"
        self.engine.register_remediation("apt-fix-broken", lambda: pkg.apt_fix_broken(chroot, dry_run=self.dry_run))
        self.engine.register_remediation("apt-clean", lambda: pkg.apt_clean(chroot, dry_run=self.dry_run))
        self.engine.register_remediation(
            "wait-network", lambda: net.wait_for_network(self.token, host=host, dry_run=self.dry_run)
        )

    def _start_background(self) -> None:
        if not self.background:
            return
        tasks = [PeriodicTask("session-heartbeat", self.guard.heartbeat, interval_s=self.cfg.heartbeat_interval_s, token=self.token)]
        if not self.dry_run:
            tasks.append(privilege_keepalive(interval_s=self.cfg.keepalive_interval_s, token=self.token))
        for t in tasks:
            self.guard.add_background_task(t.start())

    # -- run --------------------------------------------------------------

    def run(self) -> int:
        report = self.report
        self.guard.classify_session()
        self.guard.protect()
        report.session = self.guard.context.to_dict()
        if self.install_signal_handlers:
            self.guard.install_signal_handlers()

        state = self._load_state()
        ctx = BuildContext(
            cfg=self.cfg,
            tracker=self.tracker,
            engine=self.engine,
            token=self.token,
            state=state,
            report=report,
            dry_run=self.dry_run,
        )
        self._register_remediations(ctx)

        boot_exhausted = False
        violation = False
        failed = False
        try:
            self._start_background()
            self._run_steps(ctx)
        except BuildInterrupted as e:
            report.interrupted = e.reason or "cancelled"
            logger.warning("Build interrupted (%s); rolling back", report.interrupted)
        except BootloaderTierExhaustedError as e:
            boot_exhausted = True
            report.boot_attempts = list(e.attempts)
            report.fatal_error = str(e)
            logger.critical("%s", e)
        except SessionIntegrityViolation as e:
            violation = True
            report.fatal_error = str(e)
            logger.critical("%s", e)
        except OperationFailure as e:
            failed = True
            report.failures.append(e)
            report.fatal_error = str(e)
            logger.error("Build aborted: %s", e)
        except Exception as e:
            failed = True
            report.fatal_error = str(e)
            logger.exception("Build failed")
        finally:
            self._teardown(ctx)
            if self.install_signal_handlers:
                self.guard.restore_signal_handlers()

        code = self._exit_code(boot_exhausted=boot_exhausted, violation=violation, failed=failed)
        report.exit_code = int(code)
        report.finished_at = time.strftime("%Y-%m-%dT%H:%M:%S%z")
        if self.report_path:
            write_report(self.report_path, report)
        logger.info("Build finished: exit=%d (%s)", int(code), code.name)
        return int(code)

    def _run_steps(self, ctx: BuildContext) -> None:
        state = ctx.state
        for step in self.steps:
            self.token.raise_if_cancelled()
            sid = step.step_id
            if is_completed(state, sid):
                logger.info("Skipping phase %s (already completed)", sid)
                self.report.skipped_phases.append(sid)
            else:
                state["current_phase"] = sid
                write_checkpoint(self.state_path, state, self.tracker.snapshot())
                logger.info("=== Phase %s ===", sid)
                step.run(ctx)
                mark_completed(state, sid)
                self.report.completed_phases.append(sid)
                write_checkpoint(self.state_path, state, self.tracker.snapshot())

            if self.stop_after is not None and sid == self.stop_after:
                logger.info("Stopping after %s", sid)
                break
        state["current_phase"] = None

    def _teardown(self, ctx: BuildContext) -> None:
        if self.token.cancelled:
            self.report.interrupted = self.report.interrupted or self.token.reason or "cancelled"
            released = self.guard.rollback()
        elif self.skip_cleanup:
            self.guard.stop_background_tasks()
            logger.warning(
                "Skipping cleanup; %d resource(s) left attached: %s",
                len(self.tracker.active),
                ", ".join(h.id for h in self.tracker.active) or "none",
            )
            released = ReleaseReport()
        else:
            self.guard.stop_background_tasks()
            released = self.tracker.release_all()

        self.report.releases.extend(released)
        if not self.report.releases.ok:
            logger.error("%s", ReleaseFailedError(self.report.releases.failures))
        write_checkpoint(self.state_path, ctx.state, self.tracker.snapshot())

    def _exit_code(self, *, boot_exhausted: bool, violation: bool, failed: bool) -> ExitCode:
        releases = self.report.releases
        if boot_exhausted:
            return ExitCode.BOOT_EXHAUSTED
        if violation or releases.integrity_violations:
            return ExitCode.FAILED
        if not releases.ok:
            return ExitCode.RELEASE_FAILED
        if self.report.interrupted:
            return ExitCode.INTERRUPTED
        if failed:
            return ExitCode.FAILED
        return ExitCode.OK
