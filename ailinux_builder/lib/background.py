from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from .cancellation import CancellationToken
from .command import run_cmd

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `fn` every `interval_s` seconds on a daemon thread until stopped.

    Background tasks never acquire or release tracked resources; they stop on
    their own stop() or when the shared token is cancelled.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        *,
        interval_s: float,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.name = name
        self._fn = fn
        self._interval_s = interval_s
        self._token = token
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started background task %s (every %.0fs)", self.name, self._interval_s)
        return self

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout_s)
        self._thread = None
        logger.debug("Stopped background task %s", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval_s):
            if self._token is not None and self._token.cancelled:
                break
            try:
                self._fn()
            except Exception:
                logger.exception("Background task %s failed", self.name)


def refresh_privileges() -> bool:
    """Refresh cached sudo credentials so long phases do not stall on a prompt.

    Returns True when no refresh is needed (already root) or it succeeded.
    """

    if os.geteuid() == 0:
        return True
    r = run_cmd(["sudo", "-n", "-v"], check=False)
    if r.returncode != 0:
        logger.warning("sudo credential refresh failed; later phases may prompt")
        return False
    return True


def privilege_keepalive(*, interval_s: float, token: Optional[CancellationToken] = None) -> PeriodicTask:
    return PeriodicTask("privilege-keepalive", refresh_privileges, interval_s=interval_s, token=token)
