"""Tests for cancellation and background tasks."""

import threading
from unittest.mock import patch

import pytest

from ailinux_builder.errors import BuildInterrupted
from ailinux_builder.lib.background import PeriodicTask, refresh_privileges
from ailinux_builder.lib.cancellation import CancellationToken
from ailinux_builder.lib.command import CmdResult


class TestCancellationToken:
    """Test the shared shutdown flag."""

    def test_first_cancel_sets_reason(self):
        token = CancellationToken()

        token.cancel("SIGTERM")
        token.cancel("SIGINT")

        assert token.reason == "SIGTERM"
        assert token.urgent

    def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("SIGTERM",)).start()

        with pytest.raises(BuildInterrupted):
            token.sleep(10)

    def test_zero_sleep_still_checks(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(BuildInterrupted):
            token.sleep(0)


class TestPeriodicTask:
    """Test the background task thread."""

    def test_runs_until_stopped(self):
        ran = threading.Event()
        task = PeriodicTask("tick", ran.set, interval_s=0.01).start()

        assert ran.wait(2)
        task.stop()

        assert not task.running

    def test_exception_does_not_kill_task(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        task = PeriodicTask("flaky", flaky, interval_s=0.01).start()
        try:
            for _ in range(200):
                if len(calls) >= 2:
                    break
                threading.Event().wait(0.01)
        finally:
            task.stop()

        assert len(calls) >= 2

    def test_cancelled_token_ends_loop(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        task = PeriodicTask("idle", lambda: calls.append(1), interval_s=0.01, token=token).start()
        task._thread.join(2)

        assert calls == []
        assert not task.running


class TestRefreshPrivileges:
    @patch("ailinux_builder.lib.background.os.geteuid", return_value=0)
    @patch("ailinux_builder.lib.background.run_cmd")
    def test_root_needs_no_refresh(self, mock_run, _):
        assert refresh_privileges() is True
        mock_run.assert_not_called()

    @patch("ailinux_builder.lib.background.os.geteuid", return_value=1000)
    @patch("ailinux_builder.lib.background.run_cmd")
    def test_failed_refresh_reported(self, mock_run, _):
        mock_run.return_value = CmdResult(argv=["sudo"], returncode=1, stdout="", stderr="a password is required")

        assert refresh_privileges() is False
        mock_run.assert_called_once_with(["sudo", "-n", "-v"], check=False)
