"""Tests for failure classification."""

import errno
import socket
import subprocess

import pytest

from ailinux_builder.errors import CommandError, PermissionDeniedError, ResourceBusyError
from ailinux_builder.lib.classifier import Category, OperationDescriptor, classify


def cmd_error(stderr, returncode=1, argv=("apt-get", "update")):
    return CommandError(list(argv), returncode, "", stderr)


class TestClassifyMessages:
    """Test classification from command output."""

    @pytest.mark.parametrize(
        "stderr,expected",
        [
            ("E: Could not open lock file - open (13: Permission denied)", Category.PERMISSION_DENIED),
            ("mount: only root can do that; are you root?", Category.PERMISSION_DENIED),
            ("umount: /srv/chroot/proc: target is busy.", Category.RESOURCE_BUSY),
            ("E: Could not get lock /var/lib/dpkg/lock-frontend", Category.RESOURCE_BUSY),
            ("Temporary failure resolving 'archive.ubuntu.com'", Category.TRANSIENT_NETWORK),
            ("E: Failed to fetch http://archive.ubuntu.com/ubuntu/dists/noble/InRelease", Category.TRANSIENT_NETWORK),
            ("Hash Sum mismatch", Category.VALIDATION_FAILED),
            ("mount: wrong fs type, bad option, bad superblock on /dev/loop3", Category.VALIDATION_FAILED),
            ("E: Write error - write (28: No space left on device)", Category.DISK_SPACE),
            ("E: You don't have enough free space in /var/cache/apt/archives/.", Category.DISK_SPACE),
            ("grub-install: error: cannot find EFI directory.", Category.UNCLASSIFIED),
        ],
    )
    def test_stderr_patterns(self, stderr, expected):
        """Test that known error messages map to their category."""
        assert classify(OperationDescriptor("op"), cmd_error(stderr)) == expected

    def test_permission_wins_over_busy(self):
        """Test that the first matching pattern decides when several match."""
        error = cmd_error("Permission denied; device or resource busy")

        assert classify(None, error) == Category.PERMISSION_DENIED

    def test_plain_exception_message(self):
        """Test that non-command errors are classified from their message."""
        assert classify(None, RuntimeError("connection refused by mirror")) == Category.TRANSIENT_NETWORK


class TestClassifyTypes:
    """Test classification from exception types and errno values."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (PermissionDeniedError("not root"), Category.PERMISSION_DENIED),
            (ResourceBusyError("x"), Category.RESOURCE_BUSY),
            (PermissionError("nope"), Category.PERMISSION_DENIED),
            (ConnectionResetError("reset"), Category.TRANSIENT_NETWORK),
            (socket.gaierror("lookup"), Category.TRANSIENT_NETWORK),
            (subprocess.TimeoutExpired(["wget"], 30), Category.TRANSIENT_NETWORK),
            (OSError(errno.EBUSY, "Device or resource busy"), Category.RESOURCE_BUSY),
            (OSError(errno.ENETUNREACH, "unreachable"), Category.TRANSIENT_NETWORK),
            (OSError(errno.ENOSPC, "No space left on device"), Category.DISK_SPACE),
        ],
    )
    def test_exception_types(self, error, expected):
        assert classify(None, error) == expected

    def test_busy_exit_code_from_descriptor(self):
        """Test that a descriptor can declare exit codes meaning 'in use'."""
        descriptor = OperationDescriptor("detach", attrs={"busy_exit_codes": (32,)})
        error = CommandError(["losetup", "-d", "/dev/loop3"], 32, "", "")

        assert classify(descriptor, error) == Category.RESOURCE_BUSY
        assert classify(OperationDescriptor("detach"), error) == Category.UNCLASSIFIED

    def test_classification_is_deterministic(self):
        """Test that the same failure always gets the same category."""
        error = cmd_error("Temporary failure in name resolution")
        descriptor = OperationDescriptor("apt_update")

        assert {classify(descriptor, error) for _ in range(5)} == {Category.TRANSIENT_NETWORK}
