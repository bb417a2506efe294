"""Error taxonomy for the image builder.

Recoverable kinds are resolved locally by the recovery engine (retry, tier
fallback). Only exhausted operations and the two inherently fatal kinds
(`BootloaderTierExhaustedError`, `SessionIntegrityViolation`) reach the
orchestrator.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class BuildError(Exception):
    """Base class for every error raised by the builder."""


class CommandError(BuildError, RuntimeError):
    """An external command exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = (self.stderr or self.stdout).strip()
        msg = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if detail:
            msg = f"{msg}\n{detail}"
        super().__init__(msg)


class TransientNetworkError(BuildError):
    pass


class ResourceBusyError(BuildError):
    """A resource is still in use and cannot be released or acquired yet."""


class PermissionDeniedError(BuildError):
    pass


class ValidationFailedError(BuildError):
    """A precondition on the build inputs or the boot target is not met."""


class ReleaseFailedError(BuildError):
    """One or more resources could not be released during teardown.

    Non-fatal to the build itself, but always surfaced in the report and the
    exit code.
    """

    def __init__(self, failures: Sequence[Any]) -> None:
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} resource(s) could not be released")


class SessionIntegrityViolation(BuildError):
    """A cleanup action was about to target a protected host-session process."""

    def __init__(self, pid: int, action: str) -> None:
        self.pid = pid
        self.action = action
        super().__init__(f"Refusing to {action} protected session process {pid}")


class BootloaderTierExhaustedError(BuildError):
    """Every bootloader installation tier failed; the image cannot boot."""

    def __init__(self, attempts: List[Any]) -> None:
        self.attempts = list(attempts)
        tried = ", ".join(f"tier{a.tier.value}={a.outcome.value}" for a in self.attempts)
        super().__init__(f"All bootloader tiers exhausted ({tried})")


class BuildInterrupted(BuildError):
    """Shutdown was requested; raised at the next safe checkpoint."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(f"Build interrupted ({reason or 'cancelled'})")
