"""Tests for ISO assembly helpers."""

import hashlib
from unittest.mock import patch

import pytest

from ailinux_builder.errors import ValidationFailedError
from ailinux_builder.lib.image import copy_kernel, create_squashfs, verify_checksums, write_checksums, xorriso_argv


class TestXorrisoArgv:
    """Test El Torito entry selection."""

    def test_hybrid_bios_and_efi(self):
        argv = xorriso_argv(
            iso_dir="/w/iso",
            output="/out/a.iso",
            volume_label="AILINUX",
            bios=True,
            efi=True,
            isohybrid_mbr="/usr/lib/ISOLINUX/isohdpfx.bin",
        )

        assert argv[:3] == ["xorriso", "-as", "mkisofs"]
        assert "-eltorito-alt-boot" in argv
        assert argv[argv.index("-e") + 1] == "boot/grub/efi.img"
        assert "-isohybrid-gpt-basdat" in argv
        assert argv[-1] == "/w/iso"

    def test_efi_only(self):
        argv = xorriso_argv(iso_dir="/w/iso", output="/out/a.iso", volume_label="AILINUX", bios=False, efi=True)

        assert "-eltorito-boot" not in argv
        assert "-eltorito-alt-boot" not in argv
        assert "-e" in argv

    def test_bios_only_after_alternate_bootloader(self):
        argv = xorriso_argv(iso_dir="/w/iso", output="/out/a.iso", volume_label="AILINUX", bios=True, efi=False)

        assert argv[argv.index("-eltorito-boot") + 1] == "isolinux/isolinux.bin"
        assert "-e" not in argv

    def test_no_boot_entry_rejected(self):
        with pytest.raises(ValidationFailedError):
            xorriso_argv(iso_dir="/w/iso", output="/out/a.iso", volume_label="AILINUX", bios=False, efi=False)


class TestChecksums:
    """Test writing and verifying SHA256SUMS/MD5SUMS."""

    def test_written_sums_verify(self, tmp_path):
        iso = tmp_path / "ailinux-amd64.iso"
        iso.write_bytes(b"not really an iso")

        written = write_checksums(str(tmp_path), [iso])

        assert [p.name for p in written] == ["SHA256SUMS", "MD5SUMS"]
        expected = hashlib.sha256(b"not really an iso").hexdigest()
        assert (tmp_path / "SHA256SUMS").read_text() == f"{expected}  ailinux-amd64.iso\n"
        assert verify_checksums(str(tmp_path / "SHA256SUMS"), "sha256") == 1

    def test_mismatch_detected(self, tmp_path):
        iso = tmp_path / "ailinux-amd64.iso"
        iso.write_bytes(b"one")
        write_checksums(str(tmp_path), [iso])
        iso.write_bytes(b"two")

        with pytest.raises(ValidationFailedError):
            verify_checksums(str(tmp_path / "MD5SUMS"), "md5")

    def test_missing_file_detected(self, tmp_path):
        (tmp_path / "SHA256SUMS").write_text("00  gone.iso\n")

        with pytest.raises(ValidationFailedError):
            verify_checksums(str(tmp_path / "SHA256SUMS"), "sha256")


class TestCopyKernel:
    """Test picking the kernel for casper/."""

    def test_newest_kernel_copied(self, tmp_path):
        boot = tmp_path / "root/boot"
        boot.mkdir(parents=True)
        for version in ("6.8.0-31-generic", "6.8.0-45-generic"):
            (boot / f"vmlinuz-{version}").write_text(version)
            (boot / f"initrd.img-{version}").write_text(version)

        copy_kernel(str(tmp_path / "root"), str(tmp_path / "casper"))

        assert (tmp_path / "casper/vmlinuz").read_text() == "6.8.0-45-generic"
        assert (tmp_path / "casper/initrd").read_text() == "6.8.0-45-generic"

    def test_no_kernel_fails_validation(self, tmp_path):
        (tmp_path / "root/boot").mkdir(parents=True)

        with pytest.raises(ValidationFailedError):
            copy_kernel(str(tmp_path / "root"), str(tmp_path / "casper"))


class TestCreateSquashfs:
    @patch("ailinux_builder.lib.image.run_cmd")
    def test_boot_kept_but_efi_mount_excluded(self, mock_run):
        """Test that /boot stays in the live filesystem and only the EFI mount is left out."""
        create_squashfs("/w/chroot", "/w/iso/casper/filesystem.squashfs", dry_run=True)

        argv = mock_run.call_args.args[0]
        excludes = argv[argv.index("-e") + 1 :]
        assert "boot" not in excludes
        assert "boot/efi/*" in excludes
        assert "proc/*" in excludes
        assert mock_run.call_args.kwargs["dry_run"] is True
