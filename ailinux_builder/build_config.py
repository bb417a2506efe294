from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .lib.env import PATHS, REQUIRED_TOOLS

DEFAULT_BASE_PACKAGES = [
    "systemd-sysv",
    "sudo",
    "network-manager",
    "ca-certificates",
]
DEFAULT_KERNEL_PACKAGES = ["linux-generic", "initramfs-tools"]
DEFAULT_LIVE_PACKAGES = ["casper", "discover", "laptop-detect", "os-prober"]
DEFAULT_BOOT_PACKAGES = [
    "grub-efi-amd64-bin",
    "grub-efi-amd64-signed",
    "shim-signed",
    "mokutil",
    "efibootmgr",
    "grub-pc-bin",
    "grub-common",
    "isolinux",
    "syslinux-common",
    "dosfstools",
]


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"build config section '{name}' must be a mapping")
    return value


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]

    # -- paths ------------------------------------------------------------

    @property
    def work_dir(self) -> str:
        return str(_section(self.raw, "paths").get("work_dir") or PATHS.work_dir)

    @property
    def output_dir(self) -> str:
        return str(_section(self.raw, "paths").get("output_dir") or PATHS.output_dir)

    @property
    def chroot_dir(self) -> str:
        return str(_section(self.raw, "paths").get("chroot_dir") or Path(self.work_dir) / "chroot")

    @property
    def iso_dir(self) -> str:
        return str(_section(self.raw, "paths").get("iso_dir") or Path(self.work_dir) / "iso")

    # -- image ------------------------------------------------------------

    @property
    def image_name(self) -> str:
        return str(_section(self.raw, "image").get("name") or "ailinux-amd64")

    @property
    def image_title(self) -> str:
        return str(_section(self.raw, "image").get("title") or "AILinux")

    @property
    def volume_label(self) -> str:
        return str(_section(self.raw, "image").get("volume_label") or "AILINUX")[:32]

    @property
    def iso_path(self) -> str:
        return str(Path(self.output_dir) / f"{self.image_name}.iso")

    # -- distribution -----------------------------------------------------

    @property
    def suite(self) -> str:
        return str(_section(self.raw, "distro").get("suite") or "noble")

    @property
    def mirror(self) -> str:
        return str(_section(self.raw, "distro").get("mirror") or "http://archive.ubuntu.com/ubuntu")

    @property
    def arch(self) -> str:
        return str(_section(self.raw, "distro").get("arch") or "amd64")

    @property
    def components(self) -> List[str]:
        return list(_section(self.raw, "distro").get("components") or ["main", "restricted", "universe"])

    # -- packages ---------------------------------------------------------

    @property
    def base_packages(self) -> List[str]:
        return list(_section(self.raw, "packages").get("base") or DEFAULT_BASE_PACKAGES)

    @property
    def kernel_packages(self) -> List[str]:
        return list(_section(self.raw, "packages").get("kernel") or DEFAULT_KERNEL_PACKAGES)

    @property
    def live_packages(self) -> List[str]:
        return list(_section(self.raw, "packages").get("live") or DEFAULT_LIVE_PACKAGES)

    @property
    def boot_packages(self) -> List[str]:
        return list(_section(self.raw, "packages").get("boot") or DEFAULT_BOOT_PACKAGES)

    @property
    def optional_packages(self) -> Dict[str, List[str]]:
        """Named groups installed best-effort; a failed group is skipped in graceful mode."""
        groups = _section(self.raw, "packages").get("optional") or {}
        return {str(k): list(v or []) for k, v in groups.items()}

    # -- boot -------------------------------------------------------------

    @property
    def bootloader_id(self) -> str:
        return str(_section(self.raw, "boot").get("bootloader_id") or "AILinux")

    @property
    def efi_directory(self) -> str:
        return str(_section(self.raw, "boot").get("efi_directory") or "/boot/efi")

    @property
    def efi_image_size_mib(self) -> int:
        return int(_section(self.raw, "boot").get("efi_image_size_mib") or 64)

    @property
    def efi_image_min_mib(self) -> int:
        return int(_section(self.raw, "boot").get("efi_image_min_mib") or 10)

    @property
    def efi_label(self) -> str:
        return str(_section(self.raw, "boot").get("efi_label") or "AILINUX_EFI")

    @property
    def boot_repair_budget(self) -> int:
        value = _section(self.raw, "boot").get("repair_budget")
        return 1 if value is None else int(value)

    @property
    def kernel_cmdline(self) -> str:
        return str(_section(self.raw, "boot").get("cmdline") or "boot=casper quiet splash")

    # -- recovery / release ----------------------------------------------

    @property
    def failure_mode(self) -> Optional[str]:
        value = _section(self.raw, "recovery").get("failure_mode")
        return str(value) if value else None

    @property
    def recovery_policies(self) -> Dict[str, Any]:
        return dict(_section(self.raw, "recovery").get("policies") or {})

    @property
    def release_escalation(self) -> List[str]:
        return list(_section(self.raw, "release").get("escalation") or ["plain", "forced", "lazy"])

    @property
    def release_pause_s(self) -> float:
        value = _section(self.raw, "release").get("pause_s")
        return 1.0 if value is None else float(value)

    @property
    def holder_grace_s(self) -> float:
        value = _section(self.raw, "release").get("holder_grace_s")
        return 2.0 if value is None else float(value)

    # -- session ----------------------------------------------------------

    @property
    def heartbeat_interval_s(self) -> float:
        return float(_section(self.raw, "session").get("heartbeat_interval_s") or 30)

    @property
    def keepalive_interval_s(self) -> float:
        return float(_section(self.raw, "session").get("keepalive_interval_s") or 60)

    @property
    def required_tools(self) -> List[str]:
        return list(_section(self.raw, "host").get("required_tools") or REQUIRED_TOOLS)

    # -- diagnostics ------------------------------------------------------

    @property
    def diagnostics(self) -> Dict[str, Any]:
        return dict(_section(self.raw, "diagnostics"))


def resolve_failure_mode(
    *,
    strict_flag: bool,
    cfg: BuildConfig,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """--strict wins, then the config file, then CI detection, then graceful."""

    env = os.environ if environ is None else environ
    if strict_flag:
        return "strict"
    if cfg.failure_mode:
        if cfg.failure_mode not in {"strict", "graceful"}:
            raise ValueError(f"Unknown failure_mode: {cfg.failure_mode}")
        return cfg.failure_mode
    if env.get("CI"):
        return "strict"
    return "graceful"


def load_build_config(path: str, *, required: bool = True) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        if required:
            raise FileNotFoundError(path)
        return BuildConfig(raw={})

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("build config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read build_config.yaml") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("build_config.yaml must contain a mapping/object")

    return BuildConfig(raw=raw)
