# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import collections
import os
import subprocess
import threading
import time
from typing import IO

import psutil

from .logging import get_logger

logger = get_logger(__name__)


class NodeProcess:
    """A stage script running on a node.

    stdout and stderr are drained by background threads into ``log`` (if given) and into
    bounded in-memory tails, so a chatty script never blocks on a full pipe.
    """

    def __init__(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        stdin: str | None = None,
        log: str | None = None,
        tail: int = 50,
        emit_interval: float = 300.0,
    ) -> None:
        self.args = args
        self.log = log
        self._tail: collections.deque[str] = collections.deque(maxlen=tail)
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=tail)
        self._lock = threading.Lock()
        self._logfh: IO[str] | None = None
        self._open_streams = 2
        self._finalized = False
        if log is not None:
            os.makedirs(os.path.dirname(os.path.abspath(log)), exist_ok=True)
            self._logfh = open(log, mode="w")
        self.started = time.time()
        self.proc = subprocess.Popen(
            args,
            cwd=cwd,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
        self.pid = self.proc.pid
        self._readers = [
            threading.Thread(target=self._drain, args=(self.proc.stdout, False), daemon=True),
            threading.Thread(target=self._drain, args=(self.proc.stderr, True), daemon=True),
        ]
        for reader in self._readers:
            reader.start()
        if stdin is not None and self.proc.stdin is not None:
            try:
                self.proc.stdin.write(stdin)
                self.proc.stdin.close()
            except BrokenPipeError:
                logger.debug(f"process {self.pid} exited before reading its input")
        self.last_debug_emit: float = -1
        self.emit_interval: float = emit_interval

    def _drain(self, stream: IO[str], is_stderr: bool) -> None:
        try:
            for line in stream:
                with self._lock:
                    self._tail.append(line)
                    if is_stderr:
                        self._stderr_tail.append(line)
                    if self._logfh is not None:
                        self._logfh.write(line)
                        self._logfh.flush()
        finally:
            stream.close()
            with self._lock:
                self._open_streams -= 1
                if self._open_streams == 0 and self._logfh is not None:
                    self._logfh.close()
                    self._logfh = None

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    def poll(self) -> int | None:
        rc = self.proc.poll()
        now = time.monotonic()
        if now - self.last_debug_emit >= self.emit_interval:
            logger.debug(f"Polling running process with pid {self.pid}")
            self.last_debug_emit = now
        if rc is not None and not self._finalized:
            self.finalize()
        return rc

    def wait(self, timeout: float | None = None) -> int:
        rc = self.proc.wait(timeout=timeout)
        self.finalize()
        return rc

    def finalize(self, timeout: float = 1.0) -> None:
        """Give the readers a moment to drain what is left in the pipes.  Background
        children that inherited the pipes may keep them open; their output keeps flowing to
        the log after this returns."""
        self._finalized = True
        for reader in self._readers:
            reader.join(timeout=timeout)

    def tail(self) -> str:
        with self._lock:
            return "".join(self._tail)

    def stderr_tail(self) -> str:
        with self._lock:
            return "".join(self._stderr_tail)

    def cancel(self) -> None:
        """Kill a process tree (including grandchildren)"""
        logger.warning(f"cancelling process tree with pid {self.pid}")
        try:
            parent = psutil.Process(self.pid)
        except psutil.NoSuchProcess:
            return
        children = parent.children(recursive=True)
        children.append(parent)
        for p in children:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(children, timeout=5)
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                continue
        self.proc.wait()
        self.finalize()
