"""Tests for the subprocess wrapper."""

import subprocess
from unittest.mock import patch

import pytest

from ailinux_builder.errors import CommandError
from ailinux_builder.lib.chroot import CHROOT_ENV, chroot_cmd
from ailinux_builder.lib.command import run_cmd


class TestRunCmd:
    """Test run_cmd."""

    @patch("ailinux_builder.lib.command.subprocess.run")
    def test_dry_run_does_not_execute(self, mock_run):
        result = run_cmd(["mount", "--bind", "/dev", "/srv/chroot/dev"], dry_run=True)

        mock_run.assert_not_called()
        assert result.returncode == 0

    @patch("ailinux_builder.lib.command.subprocess.run")
    def test_output_captured(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["losetup"], 0, "/dev/loop3\n", "")

        result = run_cmd(["losetup", "--find", "--show", "efi.img"])

        assert result.stdout == "/dev/loop3\n"
        assert mock_run.call_args.kwargs["stdout"] == subprocess.PIPE

    @patch("ailinux_builder.lib.command.subprocess.run")
    def test_failure_raises_with_output(self, mock_run):
        """Test that CommandError carries what the classifier needs."""
        mock_run.return_value = subprocess.CompletedProcess(["umount"], 32, "", "umount: /x: target is busy.")

        with pytest.raises(CommandError) as exc:
            run_cmd(["umount", "/x"])

        assert exc.value.returncode == 32
        assert "target is busy" in exc.value.stderr
        assert "target is busy" in str(exc.value)

    @patch("ailinux_builder.lib.command.subprocess.run")
    def test_check_false_returns_failure(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["fuser"], 1, "", "")

        assert run_cmd(["fuser", "-m", "/x"], check=False).returncode == 1

    @patch("ailinux_builder.lib.command.subprocess.run")
    def test_chroot_cmd_sets_noninteractive_env(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["chroot"], 0, "", "")

        chroot_cmd("/srv/chroot", ["apt-get", "update"])

        assert mock_run.call_args.args[0] == ["chroot", "/srv/chroot", "apt-get", "update"]
        env = mock_run.call_args.kwargs["env"]
        for key, value in CHROOT_ENV.items():
            assert env[key] == value
