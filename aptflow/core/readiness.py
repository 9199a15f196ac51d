"""
Bounded readiness probe for the local validator.

Opt-in replacement for trusting the fixed start delay: retry a TCP connect
to the node's REST port with exponential backoff until it is accepted or
the timeout runs out.
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Callable, Tuple
from urllib.parse import urlsplit

from .errors import ConfigurationError, ReadinessTimeout

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 0.25
MAX_BACKOFF = 2.0


def probe_address(url: str) -> Tuple[str, int]:
    """Return the (host, port) to connect to for a node URL."""
    parts = urlsplit(url)
    if not parts.hostname:
        raise ConfigurationError(f"cannot probe url without a host: {url}")
    host = parts.hostname
    # 0.0.0.0 is a bind address; connect through loopback instead
    if host == "0.0.0.0":
        host = "127.0.0.1"
    port = parts.port or (443 if parts.scheme == "https" else 80)
    return host, port


def wait_until_ready(
    url: str,
    timeout: float,
    *,
    initial_backoff: float = INITIAL_BACKOFF,
    max_backoff: float = MAX_BACKOFF,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    connect: Callable[..., socket.socket] = socket.create_connection,
) -> int:
    """Block until ``url`` accepts a TCP connection; return the attempt count.

    Raises ReadinessTimeout once ``timeout`` seconds have passed without a
    successful connect.
    """
    address = probe_address(url)
    deadline = clock() + timeout
    backoff = initial_backoff
    attempts = 0
    while True:
        attempts += 1
        try:
            conn = connect(address, timeout=max(0.1, min(backoff, 1.0)))
        except OSError as e:
            logger.debug(f"readiness attempt {attempts} on {address[0]}:{address[1]} failed: {e}")
        else:
            conn.close()
            logger.info(f"Validator accepting connections on {address[0]}:{address[1]} after {attempts} attempts")
            return attempts

        remaining = deadline - clock()
        if remaining <= 0:
            raise ReadinessTimeout(f"{address[0]}:{address[1]}", timeout, attempts)
        sleep(min(backoff, remaining))
        backoff = min(backoff * 2, max_backoff)
