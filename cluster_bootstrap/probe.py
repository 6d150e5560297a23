"""Connectivity probes and readiness polling.

Every wait here polls at a fixed interval and returns False on timeout;
callers decide whether a timeout is fatal.
"""

import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass

from cluster_bootstrap.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL = 5.0


class ConnectivityProber:
    """Binary reachability checks against cluster nodes."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        connect_timeout: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the prober.

        Args:
            interval: Seconds between polls
            connect_timeout: Timeout for a single TCP connect or ping
            sleep: Sleep function, replaceable in tests
            clock: Monotonic clock, replaceable in tests
        """
        self.interval = interval
        self.connect_timeout = connect_timeout
        self.sleep = sleep
        self.clock = clock

    def is_port_open(self, address: str, port: int) -> bool:
        """Return True if a TCP connection to address:port succeeds."""
        try:
            with socket.create_connection((address, port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False

    def is_reachable(self, address: str) -> bool:
        """Return True if the host answers a single ICMP echo."""
        try:
            result = subprocess.run(
                ["ping", "-c", "1", "-W", str(max(1, int(self.connect_timeout))), address],
                capture_output=True,
                text=True,
                timeout=self.connect_timeout + 2,
            )
        except FileNotFoundError:
            logger.warning("ping not found in PATH, treating host as unreachable")
            return False
        except subprocess.TimeoutExpired:
            return False
        return result.returncode == 0

    def poll_until(
        self, predicate: Callable[[], bool], timeout: float, interval: float | None = None
    ) -> bool:
        """Call predicate until it returns True or timeout elapses.

        The predicate is always evaluated at least once.

        Returns:
            True if the predicate held before the deadline
        """
        interval = self.interval if interval is None else interval
        deadline = self.clock() + timeout
        while True:
            if predicate():
                return True
            if self.clock() + interval > deadline:
                return False
            self.sleep(interval)

    def wait_for_port(self, address: str, port: int, timeout: float) -> bool:
        """Wait until address:port accepts TCP connections."""
        logger.debug(f"Waiting up to {timeout:.0f}s for {address}:{port}")
        opened = self.poll_until(lambda: self.is_port_open(address, port), timeout)
        if opened:
            logger.debug(f"{address}:{port} is open")
        else:
            logger.warning(f"{address}:{port} still closed after {timeout:.0f}s")
        return opened


@dataclass
class ReadinessGate:
    """Wait until a predicate holds for a named resource."""

    target: str
    timeout: float
    interval: float = DEFAULT_INTERVAL

    def wait(self, prober: ConnectivityProber, predicate: Callable[[], bool]) -> bool:
        logger.info(f"Waiting for {self.target} (timeout {self.timeout:.0f}s)")
        ready = prober.poll_until(predicate, self.timeout, self.interval)
        if ready:
            logger.info(f"{self.target} is ready")
        else:
            logger.warning(f"{self.target} not ready after {self.timeout:.0f}s")
        return ready
