from __future__ import annotations

import errno
import re
import socket
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Pattern, Sequence, Tuple

from ..errors import (
    CommandError,
    PermissionDeniedError,
    ResourceBusyError,
    TransientNetworkError,
    ValidationFailedError,
)


class Category(str, Enum):
    TRANSIENT_NETWORK = "transient-network"
    RESOURCE_BUSY = "resource-busy"
    PERMISSION_DENIED = "permission-denied"
    VALIDATION_FAILED = "validation-failed"
    DISK_SPACE = "disk-space"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class OperationDescriptor:
    """What an operation is, independent of how it is executed.

    `critical` operations abort the build in graceful mode too (a failed
    debootstrap leaves nothing to continue with).
    """

    name: str
    command: Tuple[str, ...] = ()
    critical: bool = False
    attrs: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "command": list(self.command), "critical": self.critical}


_TYPED: Sequence[Tuple[type, Category]] = (
    (PermissionDeniedError, Category.PERMISSION_DENIED),
    (ResourceBusyError, Category.RESOURCE_BUSY),
    (TransientNetworkError, Category.TRANSIENT_NETWORK),
    (ValidationFailedError, Category.VALIDATION_FAILED),
    (PermissionError, Category.PERMISSION_DENIED),
    (ConnectionError, Category.TRANSIENT_NETWORK),
    (socket.gaierror, Category.TRANSIENT_NETWORK),
    (socket.timeout, Category.TRANSIENT_NETWORK),
    (subprocess.TimeoutExpired, Category.TRANSIENT_NETWORK),
)

_ERRNO: Dict[int, Category] = {
    errno.ENOSPC: Category.DISK_SPACE,
    errno.EDQUOT: Category.DISK_SPACE,
    errno.EBUSY: Category.RESOURCE_BUSY,
    errno.EACCES: Category.PERMISSION_DENIED,
    errno.EPERM: Category.PERMISSION_DENIED,
    errno.ECONNREFUSED: Category.TRANSIENT_NETWORK,
    errno.ECONNRESET: Category.TRANSIENT_NETWORK,
    errno.ENETUNREACH: Category.TRANSIENT_NETWORK,
    errno.EHOSTUNREACH: Category.TRANSIENT_NETWORK,
    errno.ETIMEDOUT: Category.TRANSIENT_NETWORK,
}

# Checked in order; the first match wins.
_PATTERNS: Sequence[Tuple[Category, Pattern[str]]] = (
    (
        Category.DISK_SPACE,
        re.compile(r"no space left on device|disk quota exceeded|(don.t have|not) enough free space", re.I),
    ),
    (
        Category.PERMISSION_DENIED,
        re.compile(r"permission denied|operation not permitted|must be (run as )?root|are you root", re.I),
    ),
    (
        Category.RESOURCE_BUSY,
        re.compile(
            r"target is busy|device or resource busy|resource busy|is busy|"
            r"could not get lock|unable to acquire the dpkg frontend lock",
            re.I,
        ),
    ),
    (
        Category.TRANSIENT_NETWORK,
        re.compile(
            r"temporary failure (in name resolution|resolving)|could not resolve|name or service not known|"
            r"connection refused|connection timed out|connection reset|network is unreachable|"
            r"failed to fetch|unable to connect|503 service unavailable|timed out",
            re.I,
        ),
    ),
    (
        Category.VALIDATION_FAILED,
        re.compile(
            r"checksum mismatch|hash sum mismatch|bad signature|wrong fs type|not a valid|"
            r"invalid (argument|partition|filesystem)|no such partition|validation failed",
            re.I,
        ),
    ),
)


def _error_text(error: BaseException) -> str:
    if isinstance(error, CommandError):
        return "\n".join(p for p in (error.stderr, error.stdout) if p)
    return str(error)


def classify(descriptor: Optional[OperationDescriptor], error: BaseException) -> Category:
    """Map a failed operation to a category. Pure: no I/O, no state."""

    for exc_type, category in _TYPED:
        if isinstance(error, exc_type):
            return category

    if isinstance(error, OSError) and error.errno in _ERRNO:
        return _ERRNO[error.errno]

    if isinstance(error, CommandError) and descriptor is not None:
        # e.g. fuser/losetup style tools that signal "in use" by exit status alone
        if error.returncode in descriptor.attrs.get("busy_exit_codes", ()):
            return Category.RESOURCE_BUSY

    text = _error_text(error)
    for category, pattern in _PATTERNS:
        if pattern.search(text):
            return category

    return Category.UNCLASSIFIED
