from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .lib.bootloader import BootAttempt
from .lib.recovery import OperationFailure
from .lib.resources import ReleaseReport

logger = logging.getLogger(__name__)


@dataclass
class BuildReport:
    """Everything an operator needs after the run, written as JSON."""

    session: Dict[str, Any] = field(default_factory=dict)
    failure_mode: str = "graceful"
    dry_run: bool = False
    started_at: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%S%z"))
    finished_at: Optional[str] = None
    completed_phases: List[str] = field(default_factory=list)
    skipped_phases: List[str] = field(default_factory=list)
    boot_attempts: List[BootAttempt] = field(default_factory=list)
    failures: List[OperationFailure] = field(default_factory=list)
    releases: ReleaseReport = field(default_factory=ReleaseReport)
    fatal_error: Optional[str] = None
    interrupted: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "failure_mode": self.failure_mode,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "completed_phases": list(self.completed_phases),
            "skipped_phases": list(self.skipped_phases),
            "boot_attempts": [a.to_dict() for a in self.boot_attempts],
            "escalated_failures": [f.to_dict() for f in self.failures],
            "release": self.releases.to_dict(),
            "fatal_error": self.fatal_error,
            "interrupted": self.interrupted,
            "outputs": list(self.outputs),
            "exit_code": self.exit_code,
        }


def write_report(path: str, report: BuildReport) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("Build report written: %s", path)
