"""
Readiness prober: poll an HTTP endpoint until it answers with an accepted status.
"""

import http.client
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from waha_provisioner.logger import get_logger

Fetcher = Callable[[str, float, Dict[str, str]], int]


def urllib_fetch(url: str, timeout: float, headers: Dict[str, str]) -> int:
    """GET `url` and return the HTTP status code. Connection problems raise."""
    request = urllib.request.Request(url, headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status
    except urllib.error.HTTPError as e:
        return e.code


@dataclass
class ProbeOutcome:
    ok: bool
    attempts: int
    elapsed: float
    last_status: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def status(self) -> str:
        return "ok" if self.ok else "timeout"


class ReadinessProber:
    def __init__(
        self,
        fetch: Fetcher = urllib_fetch,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.fetch = fetch
        self.clock = clock
        self.sleep = sleep
        self.headers = headers or {}

    def wait_until_ready(
        self,
        target: str,
        timeout: float,
        poll_interval: float,
        accept: Sequence[int] = (200,),
        headers: Optional[Dict[str, str]] = None,
    ) -> ProbeOutcome:
        """
        Poll `target` every `poll_interval` seconds until it returns a status in
        `accept` or `timeout` seconds have elapsed.

        A single request never waits longer than `poll_interval`, so the call
        returns no later than `timeout + poll_interval` after it started.
        """
        logger = get_logger()
        request_headers = {**self.headers, **(headers or {})}
        start = self.clock()
        deadline = start + timeout
        attempts = 0
        last_status: Optional[int] = None
        last_error: Optional[str] = None

        while True:
            attempts += 1
            request_timeout = min(poll_interval, max(deadline - self.clock(), 1.0))
            try:
                last_status = self.fetch(target, request_timeout, request_headers)
                if last_status in accept:
                    elapsed = self.clock() - start
                    logger.info(f"{target} ready after {attempts} attempt(s) ({elapsed:.1f}s)")
                    return ProbeOutcome(True, attempts, elapsed, last_status, None)
                last_error = f"HTTP {last_status}"
            except (OSError, http.client.HTTPException, ValueError) as e:
                last_error = str(e) or e.__class__.__name__

            now = self.clock()
            logger.debug(f"Probe {attempts} of {target} not ready: {last_error}")
            if now >= deadline:
                return ProbeOutcome(False, attempts, now - start, last_status, last_error)
            self.sleep(min(poll_interval, deadline - now))
