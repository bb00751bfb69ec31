# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import threading
import time
from typing import TYPE_CHECKING
from typing import Callable
from typing import List
from typing import Optional

from .logging import get_logger

if TYPE_CHECKING:
    from .process import NodeProcess

logger = get_logger(__name__)


class Future:
    """Watch a NodeProcess from a background thread and fire callbacks when it exits"""

    def __init__(self, proc: "NodeProcess", polling_interval: float = 0.5):
        self.proc = proc
        self._polling_interval = polling_interval or 0.5
        self._done_callbacks: List[Callable[["Future"], None]] = []
        self._done = threading.Event()
        self._cancelled = False
        self._lock = threading.Lock()

        # start polling in background
        threading.Thread(target=self._monitor, daemon=True).start()

    def _monitor(self):
        while True:
            if self._cancelled:
                return
            rc = self.proc.poll()
            if rc is not None:
                with self._lock:
                    if self._cancelled:
                        return
                    self._done.set()
                    callbacks = list(self._done_callbacks)
                self._invoke(callbacks)
                return
            time.sleep(self._polling_interval)

    def _invoke(self, callbacks: List[Callable[["Future"], None]]) -> None:
        for cb in callbacks:
            try:
                cb(self)
            except Exception:
                logger.exception(f"done callback for process {self.proc.pid} raised")

    def done(self) -> bool:
        return self._done.is_set()

    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        with self._lock:
            if self.done():
                return False
            self._cancelled = True
            callbacks = list(self._done_callbacks)
        self.proc.cancel()
        self._done.set()
        # callbacks still fire
        self._invoke(callbacks)
        return True

    def result(self, timeout: Optional[float] = None) -> int:
        finished = self._done.wait(timeout=timeout)
        if not finished:
            raise TimeoutError(f"Process {self.proc.pid} did not finish in time")
        rc = 1 if not isinstance(self.proc.returncode, int) else self.proc.returncode
        return rc

    def add_done_callback(self, fn: Callable[["Future"], None]):
        with self._lock:
            self._done_callbacks.append(fn)
            if not self.done():
                return
        self._invoke([fn])

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode
