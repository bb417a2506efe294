"""Tests for build configuration loading and failure-mode resolution."""

import pytest

from ailinux_builder.build_config import BuildConfig, load_build_config, resolve_failure_mode
from ailinux_builder.lib.env import REQUIRED_TOOLS


class TestLoadBuildConfig:
    """Test reading build_config.yaml."""

    def test_values_from_yaml(self, tmp_path):
        path = tmp_path / "build_config.yaml"
        path.write_text(
            "image:\n"
            "  name: ailinux-test\n"
            "distro:\n"
            "  suite: jammy\n"
            "packages:\n"
            "  optional:\n"
            "    desktop: [xfce4, lightdm]\n"
            "boot:\n"
            "  repair_budget: 0\n"
        )

        cfg = load_build_config(str(path))

        assert cfg.image_name == "ailinux-test"
        assert cfg.suite == "jammy"
        assert cfg.optional_packages == {"desktop": ["xfce4", "lightdm"]}
        assert cfg.boot_repair_budget == 0
        assert cfg.iso_path.endswith("ailinux-test.iso")

    def test_missing_required_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_build_config(str(tmp_path / "nope.yaml"))

    def test_missing_optional_file_gives_defaults(self, tmp_path):
        cfg = load_build_config(str(tmp_path / "nope.yaml"), required=False)

        assert cfg.raw == {}
        assert cfg.efi_image_size_mib == 64
        assert cfg.required_tools == list(REQUIRED_TOOLS)

    def test_non_yaml_rejected(self, tmp_path):
        path = tmp_path / "build_config.json"
        path.write_text("{}")

        with pytest.raises(ValueError):
            load_build_config(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "build_config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError):
            load_build_config(str(path))

    def test_section_must_be_mapping(self):
        cfg = BuildConfig(raw={"boot": ["grub"]})

        with pytest.raises(ValueError):
            _ = cfg.bootloader_id


class TestDefaults:
    """Test derived paths and defaults."""

    def test_chroot_and_iso_under_work_dir(self):
        cfg = BuildConfig(raw={"paths": {"work_dir": "/srv/build"}})

        assert cfg.chroot_dir == "/srv/build/chroot"
        assert cfg.iso_dir == "/srv/build/iso"

    def test_volume_label_truncated(self):
        cfg = BuildConfig(raw={"image": {"volume_label": "X" * 40}})

        assert len(cfg.volume_label) == 32


class TestResolveFailureMode:
    """Test --strict / config / CI precedence."""

    @pytest.mark.parametrize(
        "strict_flag,raw,environ,expected",
        [
            (True, {"recovery": {"failure_mode": "graceful"}}, {}, "strict"),
            (False, {"recovery": {"failure_mode": "graceful"}}, {"CI": "true"}, "graceful"),
            (False, {}, {"CI": "true"}, "strict"),
            (False, {}, {}, "graceful"),
        ],
    )
    def test_precedence(self, strict_flag, raw, environ, expected):
        cfg = BuildConfig(raw=raw)

        assert resolve_failure_mode(strict_flag=strict_flag, cfg=cfg, environ=environ) == expected

    def test_unknown_mode_rejected(self):
        cfg = BuildConfig(raw={"recovery": {"failure_mode": "yolo"}})

        with pytest.raises(ValueError):
            resolve_failure_mode(strict_flag=False, cfg=cfg, environ={})
