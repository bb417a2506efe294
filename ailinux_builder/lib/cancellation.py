from __future__ import annotations

import logging
import threading
from typing import Optional

from ..errors import BuildInterrupted

logger = logging.getLogger(__name__)


class CancellationToken:
    """Single shutdown flag shared by the main sequence, background tasks and
    signal handlers.

    Signal delivery only flips this flag; the main sequence observes it at
    safe checkpoints. A second request while already cancelled marks the
    token urgent, which the release loop uses to skip straight to its final
    escalation.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._urgent = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def urgent(self) -> bool:
        return self._urgent.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            self._urgent.set()
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BuildInterrupted(self._reason)

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`, waking early (and raising) on cancellation."""

        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(seconds):
            raise BuildInterrupted(self._reason)

    def wait(self, seconds: float) -> bool:
        """Like sleep() but returns True instead of raising; for background loops."""

        return self._event.wait(seconds)
