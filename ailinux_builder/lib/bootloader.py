"""Tiered bootloader installation.

Each tier is one RecoveryEngine run with progressively more permissive
parameters; the last tier swaps GRUB/EFI for ISOLINUX so a BIOS-bootable
image is still produced when every EFI variant fails:

    TIER1_STANDARD -> TIER2_NO_NVRAM -> TIER3_FORCE_REMOVABLE
        -> TIER4_ALTERNATE_BOOTLOADER -> SUCCESS | EXHAUSTED_FATAL

The first success short-circuits the sequence. Every attempt is kept, in
order, for the build report.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import BootloaderTierExhaustedError, BuildInterrupted, SessionIntegrityViolation, ValidationFailedError
from .chroot import chroot_cmd
from .classifier import Category, OperationDescriptor
from .recovery import OperationFailure, RecoveryEngine
from .resources import ReleaseReport, ResourceTracker

logger = logging.getLogger(__name__)


class InstallState(str, Enum):
    TIER1_STANDARD = "tier1-standard"
    TIER2_NO_NVRAM = "tier2-no-nvram"
    TIER3_FORCE_REMOVABLE = "tier3-force-removable"
    TIER4_ALTERNATE_BOOTLOADER = "tier4-alternate-bootloader"
    SUCCESS = "success"
    EXHAUSTED_FATAL = "exhausted-fatal"


class BootTier(int, Enum):
    STANDARD = 1
    NO_NVRAM = 2
    FORCE_REMOVABLE = 3
    ALTERNATE_BOOTLOADER = 4

    @property
    def state(self) -> InstallState:
        return _TIER_STATES[self]


_TIER_STATES = {
    BootTier.STANDARD: InstallState.TIER1_STANDARD,
    BootTier.NO_NVRAM: InstallState.TIER2_NO_NVRAM,
    BootTier.FORCE_REMOVABLE: InstallState.TIER3_FORCE_REMOVABLE,
    BootTier.ALTERNATE_BOOTLOADER: InstallState.TIER4_ALTERNATE_BOOTLOADER,
}


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


@dataclass(frozen=True)
class TierParameters:
    bootloader: str  # grub|isolinux
    firmware_target: str
    install_location: str
    no_nvram: bool = False
    removable: bool = False
    force: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bootloader": self.bootloader,
            "firmware_target": self.firmware_target,
            "install_location": self.install_location,
            "no_nvram": self.no_nvram,
            "removable": self.removable,
            "force": self.force,
        }


def tier_plan(efi_directory: str = "/boot/efi") -> List[Tuple[BootTier, TierParameters]]:
    grub = dict(bootloader="grub", firmware_target="x86_64-efi", install_location=efi_directory)
    return [
        (BootTier.STANDARD, TierParameters(**grub)),
        (BootTier.NO_NVRAM, TierParameters(**grub, no_nvram=True)),
        (BootTier.FORCE_REMOVABLE, TierParameters(**grub, no_nvram=True, removable=True, force=True)),
        (
            BootTier.ALTERNATE_BOOTLOADER,
            TierParameters(bootloader="isolinux", firmware_target="i386-pc", install_location="isolinux"),
        ),
    ]


DEFAULT_TIERS = tier_plan()


@dataclass
class BootAttempt:
    tier: BootTier
    parameters: TierParameters
    outcome: Outcome
    degraded: bool = False
    category: Optional[Category] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "state": self.tier.state.value,
            "parameters": self.parameters.to_dict(),
            "outcome": self.outcome.value,
            "degraded": self.degraded,
            "category": self.category.value if self.category else None,
            "error": self.error,
            "attempts": self.attempts,
        }


# Shipped by shim-signed and grub-efi-amd64-signed, relative to the chroot.
SIGNED_SHIM = "usr/lib/shim/shimx64.efi.signed"
SIGNED_GRUB = "usr/lib/grub/x86_64-efi-signed/grubx64.efi.signed"
MOK_MANAGER = "usr/lib/shim/mmx64.efi"


def grub_install_argv(params: TierParameters, *, bootloader_id: str) -> List[str]:
    argv = [
        "grub-install",
        f"--target={params.firmware_target}",
        f"--efi-directory={params.install_location}",
        f"--bootloader-id={bootloader_id}",
    ]
    if params.no_nvram:
        argv.append("--no-nvram")
    if params.removable:
        argv.append("--removable")
    if params.force:
        argv.append("--force")
    return argv


class GrubEfiStrategy:
    """grub-install into the EFI image mounted inside the chroot.

    When the chroot carries shim-signed and grub-efi-amd64-signed, the
    removable-media path gets the signed shim as BOOTX64.EFI with the signed
    GRUB beside it; otherwise the unsigned grubx64.efi is used.
    """

    def __init__(self, chroot_dir: str, *, bootloader_id: str = "AILinux", dry_run: bool = False) -> None:
        self.chroot_dir = chroot_dir
        self.bootloader_id = bootloader_id
        self.dry_run = dry_run

    def __call__(self, params: TierParameters) -> None:
        chroot_cmd(self.chroot_dir, grub_install_argv(params, bootloader_id=self.bootloader_id), dry_run=self.dry_run)
        if self.dry_run:
            return
        esp = Path(self.chroot_dir) / params.install_location.lstrip("/")
        if self._install_signed_chain(esp):
            # Ubuntu's signed GRUB has /EFI/ubuntu baked in as its prefix.
            write_esp_grub_cfg(esp / "EFI/ubuntu/grub.cfg")
        else:
            self._ensure_fallback_loader(esp)
        write_esp_grub_cfg(esp / "EFI/BOOT/grub.cfg")

    def _install_signed_chain(self, esp: Path) -> bool:
        root = Path(self.chroot_dir)
        shim = root / SIGNED_SHIM
        grub = root / SIGNED_GRUB
        if not (shim.is_file() and grub.is_file()):
            logger.info("Signed shim/GRUB not present in %s; installing unsigned loader", root)
            return False
        boot_dir = esp / "EFI/BOOT"
        boot_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(shim, boot_dir / "BOOTX64.EFI")
        shutil.copy2(grub, boot_dir / "grubx64.efi")
        mok_manager = root / MOK_MANAGER
        if mok_manager.is_file():
            shutil.copy2(mok_manager, boot_dir / "mmx64.efi")
        logger.info("Installed signed shim and GRUB into %s", boot_dir)
        return True

    def _ensure_fallback_loader(self, esp: Path) -> None:
        # Removable media firmware only looks at EFI/BOOT/BOOTX64.EFI.
        fallback = esp / "EFI/BOOT/BOOTX64.EFI"
        if fallback.exists():
            return
        src = esp / "EFI" / self.bootloader_id / "grubx64.efi"
        if not src.exists():
            raise ValidationFailedError(f"grub-install produced no EFI loader under {esp}")
        fallback.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, fallback)
        logger.info("Copied %s -> %s", src, fallback)


ISOLINUX_FILES: Mapping[str, Sequence[str]] = {
    "isolinux.bin": ("usr/lib/ISOLINUX/isolinux.bin",),
    "ldlinux.c32": ("usr/lib/syslinux/modules/bios/ldlinux.c32",),
    "libcom32.c32": ("usr/lib/syslinux/modules/bios/libcom32.c32",),
    "libutil.c32": ("usr/lib/syslinux/modules/bios/libutil.c32",),
    "menu.c32": ("usr/lib/syslinux/modules/bios/menu.c32",),
}


class IsolinuxStrategy:
    """Copy ISOLINUX (BIOS El Torito) into the ISO tree; no GRUB or EFI involved."""

    def __init__(
        self,
        iso_dir: str,
        *,
        search_roots: Sequence[str] = ("/",),
        title: str = "AILinux",
        cmdline: str = "boot=casper quiet splash",
        dry_run: bool = False,
    ) -> None:
        self.iso_dir = iso_dir
        self.search_roots = list(search_roots)
        self.title = title
        self.cmdline = cmdline
        self.dry_run = dry_run

    def _find(self, candidates: Sequence[str]) -> Optional[Path]:
        for root in self.search_roots:
            for rel in candidates:
                p = Path(root) / rel
                if p.is_file():
                    return p
        return None

    def __call__(self, params: TierParameters) -> None:
        dest = Path(self.iso_dir) / params.install_location
        if self.dry_run:
            logger.info("Would install ISOLINUX into %s", dest)
            return

        found: Dict[str, Path] = {}
        for name, candidates in ISOLINUX_FILES.items():
            p = self._find(candidates)
            if p is None:
                if name in {"isolinux.bin", "ldlinux.c32"}:
                    raise ValidationFailedError(f"{name} not found under {', '.join(self.search_roots)}")
                logger.warning("Optional ISOLINUX module %s not found", name)
                continue
            found[name] = p

        dest.mkdir(parents=True, exist_ok=True)
        for name, src in found.items():
            shutil.copy2(src, dest / name)
        write_isolinux_cfg(dest / "isolinux.cfg", title=self.title, cmdline=self.cmdline, menu="menu.c32" in found)
        logger.info("ISOLINUX installed into %s", dest)


def write_grub_cfg(path: Path, *, title: str, cmdline: str, timeout_s: int = 5) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"set timeout={timeout_s}\n"
        'set default="0"\n\n'
        f'menuentry "Try or Install {title}" {{\n'
        f"    linux /casper/vmlinuz {cmdline} ---\n"
        "    initrd /casper/initrd\n"
        "}\n"
        f'menuentry "Try {title} (safe graphics)" {{\n'
        f"    linux /casper/vmlinuz {cmdline} nomodeset ---\n"
        "    initrd /casper/initrd\n"
        "}\n",
        encoding="utf-8",
    )
    logger.info("Wrote GRUB menu: %s", str(path))


def write_esp_grub_cfg(path: Path) -> None:
    """Stub config on the EFI image that hands over to the ISO's grub.cfg."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "search --no-floppy --set=root --file /casper/filesystem.squashfs\n"
        "set prefix=($root)/boot/grub\n"
        "configfile $prefix/grub.cfg\n",
        encoding="utf-8",
    )


def write_isolinux_cfg(path: Path, *, title: str, cmdline: str, menu: bool = True) -> None:
    head = "UI menu.c32\n" if menu else ""
    path.write_text(
        f"{head}"
        "PROMPT 0\n"
        "TIMEOUT 50\n"
        "DEFAULT live\n\n"
        f"MENU TITLE {title}\n"
        "LABEL live\n"
        f"  MENU LABEL Try or Install {title}\n"
        "  KERNEL /casper/vmlinuz\n"
        f"  APPEND initrd=/casper/initrd {cmdline} ---\n"
        "LABEL safe\n"
        f"  MENU LABEL Try {title} (safe graphics)\n"
        "  KERNEL /casper/vmlinuz\n"
        f"  APPEND initrd=/casper/initrd {cmdline} nomodeset ---\n",
        encoding="utf-8",
    )
    logger.info("Wrote ISOLINUX menu: %s", str(path))


Strategy = Callable[[TierParameters], None]


class BootloaderInstaller:
    def __init__(
        self,
        *,
        engine: RecoveryEngine,
        tracker: ResourceTracker,
        target: Any,
        strategies: Mapping[str, Strategy],
        tiers: Optional[Sequence[Tuple[BootTier, TierParameters]]] = None,
        repair_budget: int = 1,
    ) -> None:
        self.engine = engine
        self.tracker = tracker
        self.target = target
        self.strategies = dict(strategies)
        self.tiers = list(tiers if tiers is not None else DEFAULT_TIERS)
        self.repair_budget = max(0, repair_budget)
        self.state: Optional[InstallState] = None
        self.attempts: List[BootAttempt] = []
        self.release_report = ReleaseReport()

    def run(self) -> List[BootAttempt]:
        """Walk the tiers until one succeeds.

        Returns the attempt sequence (last entry successful) or raises
        BootloaderTierExhaustedError carrying every attempt.
        """

        self.attempts = []
        try:
            for i, (tier, params) in enumerate(self.tiers):
                self.state = tier.state
                last = i == len(self.tiers) - 1
                degraded = not self._prepare_target()
                attempt = self._run_tier(tier, params, degraded=degraded, last=last)
                self.attempts.append(attempt)
                if attempt.outcome == Outcome.SUCCESS:
                    self.state = InstallState.SUCCESS
                    logger.info("Bootloader installed by tier %d (%s)", tier.value, params.bootloader)
                    return list(self.attempts)
        finally:
            self.release_report.extend(self.target.close(self.tracker))

        self.state = InstallState.EXHAUSTED_FATAL
        for a in self.attempts:
            logger.error(
                "Boot tier %d (%s): %s degraded=%s category=%s error=%s",
                a.tier.value,
                a.parameters.bootloader,
                a.outcome.value,
                a.degraded,
                a.category.value if a.category else None,
                a.error,
            )
        raise BootloaderTierExhaustedError(self.attempts)

    def _run_tier(self, tier: BootTier, params: TierParameters, *, degraded: bool, last: bool) -> BootAttempt:
        strategy = self.strategies.get(params.bootloader)
        if strategy is None:
            raise ValueError(f"No installer strategy for bootloader {params.bootloader!r}")

        descriptor = OperationDescriptor(
            name=f"bootloader_tier{tier.value}",
            attrs={"tier": tier.value, "bootloader": params.bootloader, "degraded": degraded},
        )
        logger.info("Boot tier %d (%s)%s", tier.value, tier.state.value, " [degraded target]" if degraded else "")
        try:
            self.engine.run(descriptor, lambda: strategy(params), tracker=self.tracker)
        except OperationFailure as e:
            outcome = Outcome.FATAL_FAILURE if last else Outcome.RETRYABLE_FAILURE
            logger.warning("Boot tier %d failed (%s): %s", tier.value, outcome.value, e)
            return BootAttempt(
                tier=tier,
                parameters=params,
                outcome=outcome,
                degraded=degraded,
                category=e.category,
                error=str(e.record.last_error),
                attempts=e.record.attempt_count,
            )
        record = self.engine.last_record
        return BootAttempt(
            tier=tier,
            parameters=params,
            outcome=Outcome.SUCCESS,
            degraded=degraded,
            attempts=record.attempt_count if record is not None else 1,
        )

    def _prepare_target(self) -> bool:
        """Validate (and if needed repair) the boot target; False means degraded."""

        problem = self.target.validate()
        if problem is None:
            try:
                self.target.open(self.tracker)
                return True
            except (BuildInterrupted, SessionIntegrityViolation):
                raise
            except Exception as e:
                problem = f"cannot mount boot target: {e}"

        logger.warning("Boot target invalid: %s", problem)
        for n in range(1, self.repair_budget + 1):
            try:
                self.target.repair(self.tracker)
            except (BuildInterrupted, SessionIntegrityViolation):
                raise
            except Exception as e:
                logger.warning("Boot target repair %d/%d failed: %s", n, self.repair_budget, e)
                continue
            if self.target.validate() is None:
                logger.info("Boot target repaired")
                return True

        logger.error("Boot target could not be repaired; continuing degraded")
        return False
