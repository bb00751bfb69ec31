# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import enum
import threading
import time
from dataclasses import dataclass
from typing import Any
from typing import Callable

import requests

from .jobspec import ReadinessProbe
from .logging import get_logger

logger = get_logger(__name__)


class ProbeStatus(enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_TIMEOUT = "failed_timeout"
    FAILED_ERROR = "failed_error"


@dataclass
class ProbeResult:
    status: ProbeStatus = ProbeStatus.PENDING
    attempts: int = 0
    # seconds from the start of the run stage to the first successful response
    first_success: float | None = None
    # status code and body prefix, or the text of the last exception
    last_response: str | None = None
    connection_errors: int = 0

    @property
    def done(self) -> bool:
        return self.status != ProbeStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return self.status == ProbeStatus.SUCCEEDED


class ReadinessProber:
    """Poll a service until it answers with a 2xx response.

    The first request is sent ``initial_delay_seconds`` after the run stage started (the
    floor), then one every ``interval`` seconds until the ceiling.  The ceiling is ``timeout``
    if given, otherwise ``timeout_factor`` times the initial delay, and is never less than one
    interval past the floor.  A final request is sent at the ceiling, and no request is allowed
    to outlive it.
    """

    body_prefix = 200
    min_request_timeout = 0.001

    def __init__(
        self,
        probe: ReadinessProbe,
        url: str,
        *,
        post_data: Any = None,
        interval: float = 10.0,
        timeout: float | None = None,
        timeout_factor: float = 2.0,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("probe interval must be positive")
        self.probe = probe
        self.url = url
        self.post_data = probe.post_data if post_data is None else post_data
        self.interval = interval
        self.timeout = timeout
        self.timeout_factor = timeout_factor
        self.request_timeout = request_timeout
        self.clock = clock
        self._cancel = threading.Event()
        self._sleep = sleep or self._cancel.wait
        self.session = session or requests.Session()
        self.result = ProbeResult()
        self._thread: threading.Thread | None = None

    @property
    def floor(self) -> float:
        return float(self.probe.initial_delay_seconds)

    @property
    def ceiling(self) -> float:
        if self.timeout is not None:
            ceiling = self.timeout
        else:
            ceiling = self.timeout_factor * self.floor
        return max(ceiling, self.floor + self.interval)

    def run(self, start: float | None = None) -> ProbeResult:
        """Probe until success, the ceiling, or cancellation.  ``start`` is the time (on
        ``clock``) the run stage started"""
        start = self.clock() if start is None else start
        floor, ceiling = start + self.floor, start + self.ceiling
        logger.debug(f"probing {self.url} in {self.floor}s, giving up after {self.ceiling}s")
        self._wait_until(floor)
        while not self.cancelled():
            if self.attempt(deadline=ceiling):
                self.result.first_success = self.clock() - start
                self.result.status = ProbeStatus.SUCCEEDED
                logger.info(f"{self.url} ready after {self.result.first_success:.1f}s")
                return self.result
            now = self.clock()
            if now >= ceiling:
                break
            self._wait_until(min(now + self.interval, ceiling))
        if self.cancelled():
            return self.result
        if self.result.attempts and self.result.connection_errors == self.result.attempts:
            self.result.status = ProbeStatus.FAILED_ERROR
        else:
            self.result.status = ProbeStatus.FAILED_TIMEOUT
        logger.warning(
            f"{self.url} not ready after {self.result.attempts} attempt(s): "
            f"{self.result.last_response}"
        )
        return self.result

    def attempt(self, deadline: float | None = None) -> bool:
        """Send one request.  With ``deadline`` (on ``clock``) the request may not outlive it"""
        self.result.attempts += 1
        timeout = self.request_timeout
        if deadline is not None:
            timeout = min(timeout, max(deadline - self.clock(), self.min_request_timeout))
        try:
            if self.post_data is None:
                response = self.session.get(self.url, timeout=timeout)
            else:
                response = self.session.post(self.url, json=self.post_data, timeout=timeout)
        except requests.exceptions.ConnectionError as e:
            self.result.connection_errors += 1
            self.result.last_response = f"connection error: {e}"
            return False
        except requests.exceptions.RequestException as e:
            self.result.last_response = f"request failed: {e}"
            return False
        self.result.last_response = f"{response.status_code} {response.text[: self.body_prefix]}"
        logger.debug(f"probe {self.result.attempts} of {self.url}: {response.status_code}")
        return 200 <= response.status_code < 300

    def _wait_until(self, deadline: float) -> None:
        while not self.cancelled():
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            self._sleep(remaining)

    def start(self, start: float | None = None) -> None:
        start = self.clock() if start is None else start
        self._thread = threading.Thread(target=self.run, args=(start,), daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None) -> ProbeResult:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        return self.result

    def cancel(self) -> None:
        self._cancel.set()

    def cancelled(self) -> bool:
        return self._cancel.is_set()
