"""Tests for the build orchestrator: phase sequencing, teardown and exit codes."""

import json
import os
import signal

import pytest

from ailinux_builder.build_config import BuildConfig
from ailinux_builder.build_state import load_build_state
from ailinux_builder.errors import BootloaderTierExhaustedError, PermissionDeniedError, SessionIntegrityViolation
from ailinux_builder.lib.cancellation import CancellationToken
from ailinux_builder.lib.recovery import FailureMode, RecoveryEngine
from ailinux_builder.lib.resources import ReleaseMode, ResourceKind, ResourceTracker
from ailinux_builder.lib.session import SessionGuard
from ailinux_builder.pipeline import BuildOrchestrator, ExitCode


class FakeStep:
    """Phase that acquires placeholder mounts and then runs `action(ctx)`."""

    def __init__(self, step_id, mounts=(), action=None):
        self.step_id = step_id
        self.mounts = list(mounts)
        self.action = action
        self.runs = 0

    def run(self, ctx):
        self.runs += 1
        for m in self.mounts:
            ctx.tracker.acquire(ResourceKind.BIND_MOUNT, m, lambda m=m: m)
        if self.action is not None:
            self.action(ctx)


def raising(error):
    """Phase action raising `error`."""

    def action(ctx):
        raise error

    return action


def failing_op(error):
    """Operation (no arguments) raising `error`."""

    def op():
        raise error

    return op


@pytest.fixture
def paths(tmp_path):
    return {"state_path": str(tmp_path / "state.json"), "report_path": str(tmp_path / "report.json")}


@pytest.fixture
def make_orchestrator(tracker, guard, engine, token, paths):
    def _make(steps, **kwargs):
        options = dict(paths, token=token, tracker=tracker, guard=guard, engine=engine, background=False)
        options.update(kwargs)
        return BuildOrchestrator(BuildConfig(raw={}), steps=steps, **options)

    return _make


class TestSuccessfulRun:
    """Test a build where every phase succeeds."""

    def test_exit_ok_and_lifo_teardown(self, make_orchestrator, releaser, paths):
        """Test that resources from all phases are released newest first."""
        steps = [FakeStep("a", ["/mnt/a1", "/mnt/a2"]), FakeStep("b", ["/mnt/b1"])]

        code = make_orchestrator(steps).run()

        assert code == ExitCode.OK
        assert releaser.released_ids == ["/mnt/b1", "/mnt/a2", "/mnt/a1"]
        report = json.loads(open(paths["report_path"]).read())
        assert report["completed_phases"] == ["a", "b"]
        assert report["exit_code"] == 0

    def test_checkpoint_records_phases_and_empty_ledger(self, make_orchestrator, paths):
        make_orchestrator([FakeStep("a", ["/mnt/a1"])]).run()

        state = load_build_state(paths["state_path"])
        assert state["completed_phases"] == ["a"]
        assert state["ledger"] == []

    def test_stop_after_skips_later_phases(self, make_orchestrator):
        later = FakeStep("c")

        code = make_orchestrator([FakeStep("a"), FakeStep("b"), later], stop_after="b").run()

        assert code == ExitCode.OK
        assert later.runs == 0

    def test_unknown_stop_after_rejected(self, make_orchestrator):
        with pytest.raises(ValueError):
            make_orchestrator([FakeStep("a")], stop_after="zz")


class TestFailedRun:
    """Test exit codes and teardown on failures."""

    def test_critical_failure_exits_one_and_releases(self, make_orchestrator, releaser):
        """Test that an escalated critical operation aborts the build and still unwinds."""

        def action(ctx):
            ctx.run_op("debootstrap", failing_op(PermissionDeniedError("must be root")), critical=True)

        later = FakeStep("b")
        code = make_orchestrator([FakeStep("a", ["/mnt/a"], action=action), later]).run()

        assert code == ExitCode.FAILED
        assert later.runs == 0
        assert releaser.released_ids == ["/mnt/a"]

    def test_unexpected_exception_exits_one(self, make_orchestrator, releaser):
        code = make_orchestrator([FakeStep("a", ["/mnt/a"], action=raising(KeyError("boom")))]).run()

        assert code == ExitCode.FAILED
        assert releaser.released_ids == ["/mnt/a"]

    def test_boot_exhaustion_exits_three(self, make_orchestrator, releaser, paths):
        """Test that exhausted bootloader tiers take precedence and resources are still released."""
        step = FakeStep("boot", ["/mnt/efi"], action=raising(BootloaderTierExhaustedError([])))

        code = make_orchestrator([step]).run()

        assert code == ExitCode.BOOT_EXHAUSTED
        assert releaser.released_ids == ["/mnt/efi"]
        report = json.loads(open(paths["report_path"]).read())
        assert "exhausted" in report["fatal_error"]

    def test_boot_exhaustion_wins_over_release_failure(self, make_orchestrator, releaser):
        releaser.fail["/mnt/efi"] = set(ReleaseMode)
        step = FakeStep("boot", ["/mnt/efi"], action=raising(BootloaderTierExhaustedError([])))

        assert make_orchestrator([step]).run() == ExitCode.BOOT_EXHAUSTED

    def test_release_failure_exits_four(self, make_orchestrator, releaser, paths):
        """Test that an otherwise successful build with a stuck mount reports it."""
        releaser.fail["/mnt/b"] = set(ReleaseMode)

        code = make_orchestrator([FakeStep("a", ["/mnt/a", "/mnt/b", "/mnt/c"])]).run()

        assert code == ExitCode.RELEASE_FAILED
        assert [rid for rid, mode in releaser.calls if mode == ReleaseMode.PLAIN] == ["/mnt/c", "/mnt/b", "/mnt/a"]
        report = json.loads(open(paths["report_path"]).read())
        assert report["release"]["failures"][0]["handle"]["id"] == "/mnt/b"

    def test_integrity_violation_during_release_exits_one(self, make_orchestrator, releaser):
        releaser.fail["/mnt/a"] = SessionIntegrityViolation(1, "send signal 15 to")

        assert make_orchestrator([FakeStep("a", ["/mnt/a"])]).run() == ExitCode.FAILED


class TestFailureModes:
    """Test graceful versus strict handling of non-critical operations."""

    def optional_step(self):
        def action(ctx):
            ctx.run_op("install_optional_desktop", failing_op(PermissionDeniedError("denied")))
            ctx.state["after_optional"] = True

        return FakeStep("a", action=action)

    def test_graceful_continues_and_records(self, make_orchestrator, paths):
        """Test that graceful mode skips a failed non-critical operation."""
        orchestrator = make_orchestrator([self.optional_step()])

        code = orchestrator.run()

        assert code == ExitCode.OK
        assert [f.descriptor.name for f in orchestrator.report.failures] == ["install_optional_desktop"]
        assert load_build_state(paths["state_path"])["after_optional"] is True

    def test_strict_aborts(self, make_orchestrator, token, fast_policies):
        """Test that strict mode aborts on the first escalation."""
        engine = RecoveryEngine(token=token, policies=fast_policies, failure_mode=FailureMode.STRICT)

        code = make_orchestrator([self.optional_step()], engine=engine).run()

        assert code == ExitCode.FAILED


class TestSignals:
    """Test interruption by termination signals."""

    def test_sigterm_rolls_back_and_exits_130(self, make_orchestrator, releaser):
        """Test that SIGTERM mid-phase rolls back every resource and restores handlers."""
        previous = signal.getsignal(signal.SIGTERM)
        later = FakeStep("b", ["/mnt/b"])

        def action(ctx):
            os.kill(os.getpid(), signal.SIGTERM)
            ctx.token.raise_if_cancelled()

        code = make_orchestrator([FakeStep("a", ["/mnt/a1", "/mnt/a2"], action=action), later]).run()

        assert code == ExitCode.INTERRUPTED
        assert later.runs == 0
        assert releaser.released_ids == ["/mnt/a2", "/mnt/a1"]
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_rollback_ignores_skip_cleanup(self, make_orchestrator, releaser, token):
        """Test that an interrupted build is always unwound."""

        def action(ctx):
            token.cancel("SIGINT")
            ctx.token.raise_if_cancelled()

        code = make_orchestrator(
            [FakeStep("a", ["/mnt/a"], action=action)], skip_cleanup=True, install_signal_handlers=False
        ).run()

        assert code == ExitCode.INTERRUPTED
        assert releaser.released_ids == ["/mnt/a"]


class TestResume:
    """Test skip-cleanup followed by a resumed run."""

    def test_resume_adopts_ledger_and_skips_completed(self, make_orchestrator, releaser, sleeps, paths):
        first_a = FakeStep("a", ["/mnt/a"])
        code = make_orchestrator([first_a, FakeStep("b")], stop_after="a", skip_cleanup=True).run()

        assert code == ExitCode.OK
        assert releaser.calls == []
        assert load_build_state(paths["state_path"])["ledger"][0]["id"] == "/mnt/a"

        token = CancellationToken()
        tracker = ResourceTracker(
            releasers={kind: releaser for kind in ResourceKind}, token=token, sleep=sleeps.append
        )
        guard = SessionGuard(
            tracker=tracker, token=token, environ={}, isatty=lambda: True, count_processes=lambda: 1, kill=os.kill
        )
        second_a, b = FakeStep("a", ["/mnt/a"]), FakeStep("b", ["/mnt/b"])
        resumed = make_orchestrator(
            [second_a, b],
            resume=True,
            token=token,
            tracker=tracker,
            guard=guard,
            engine=RecoveryEngine(token=token),
        )

        assert resumed.run() == ExitCode.OK
        assert second_a.runs == 0
        assert b.runs == 1
        assert resumed.report.skipped_phases == ["a"]
        assert releaser.released_ids == ["/mnt/b", "/mnt/a"]


class TestDryRun:
    """Test the real phase sequence in dry-run mode."""

    def test_default_phases_complete(self, tmp_path, monkeypatch):
        """Test that a full dry-run build walks every phase and exits 0."""
        monkeypatch.delenv("MIXTRAL_API_KEY", raising=False)
        cfg = BuildConfig(
            raw={
                "paths": {"work_dir": str(tmp_path / "work"), "output_dir": str(tmp_path / "out")},
                "recovery": {"policies": {"unclassified": {"delay_s": 0}}},
            }
        )
        orchestrator = BuildOrchestrator(
            cfg,
            state_path=str(tmp_path / "state.json"),
            report_path=str(tmp_path / "report.json"),
            dry_run=True,
            background=False,
            install_signal_handlers=False,
        )

        code = orchestrator.run()

        assert code == ExitCode.OK
        assert orchestrator.report.completed_phases == [
            "00_prepare_workspace",
            "10_stage_filesystem",
            "20_install_software",
            "30_configure_boot",
            "40_assemble_image",
            "50_package_outputs",
        ]
        assert orchestrator.report.boot_attempts[0].tier.value == 1
        assert not (tmp_path / "work").exists()
        assert not (tmp_path / "out").exists()
        assert orchestrator.tracker.active == []
