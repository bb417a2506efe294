from __future__ import annotations

import logging
import socket
import time
from typing import Optional

from ..errors import TransientNetworkError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)


def is_online(host: str = "archive.ubuntu.com", port: int = 80, *, timeout_s: float = 3.0) -> bool:
    """Best-effort online check: resolve and connect to the mirror host."""

    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True
    except OSError:
        return False


def wait_for_network(
    token: CancellationToken,
    *,
    host: str = "archive.ubuntu.com",
    timeout_s: float = 60.0,
    poll_s: float = 5.0,
    dry_run: bool = False,
) -> None:
    """Block until `host` is reachable, the token is cancelled, or `timeout_s` passes."""

    if dry_run:
        return
    deadline = time.monotonic() + timeout_s
    while True:
        if is_online(host):
            logger.info("Network reachable (%s)", host)
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransientNetworkError(f"{host} still unreachable after {timeout_s:.0f}s")
        logger.info("Waiting for network (%s)...", host)
        token.sleep(min(poll_s, remaining))


def mirror_host(mirror: str) -> Optional[str]:
    # http://archive.ubuntu.com/ubuntu -> archive.ubuntu.com
    rest = mirror.split("://", 1)[-1]
    host = rest.split("/", 1)[0].split(":", 1)[0]
    return host or None
