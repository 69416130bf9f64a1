from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

import httpx


def check_health(
    url: str,
    timeout_s: float = 2.0,
    transport: httpx.BaseTransport | None = None,
) -> tuple[bool, str, float | None]:
    """Call a service health endpoint once.

    Healthy iff the endpoint answers HTTP 200.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


@dataclass(frozen=True)
class ProbeResult:
    healthy: bool
    last_error: str | None
    attempts_used: int
    cancelled: bool = False


class HealthChecker:
    """Bounded retry around check_health.

    Stateless apart from its configuration, so one instance can probe
    independent services concurrently.
    """

    def __init__(
        self,
        timeout_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ):
        self.timeout_s = timeout_s
        self._sleep = sleep
        self._transport = transport

    def check(self, url: str, timeout_s: float | None = None) -> tuple[bool, str, float | None]:
        return check_health(url, timeout_s=self.timeout_s if timeout_s is None else timeout_s, transport=self._transport)

    def probe(
        self,
        url: str,
        attempts: int = 30,
        interval_s: float = 2.0,
        cancel: threading.Event | None = None,
        timeout_s: float | None = None,
    ) -> ProbeResult:
        """Poll url until it is healthy or attempts are exhausted.

        Every failed attempt is followed by an interval_s wait, so giving up
        takes attempts * interval_s of waiting. A set cancel event ends the
        loop early with cancelled=True.
        """
        attempts = max(1, int(attempts))
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                return ProbeResult(False, last_error or "cancelled", attempt - 1, cancelled=True)
            ok, msg, _latency = self.check(url, timeout_s)
            if ok:
                return ProbeResult(True, None, attempt)
            last_error = msg
            if interval_s > 0:
                if cancel is not None:
                    if cancel.wait(interval_s):
                        return ProbeResult(False, last_error, attempt, cancelled=True)
                else:
                    self._sleep(interval_s)
        return ProbeResult(False, last_error, attempts)
