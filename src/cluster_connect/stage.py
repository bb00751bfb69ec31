# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
"""
Stage execution
---------------

Every node walks the same state machine::

    INIT -> SETUP -> RUN -> READY
      \\        \\       \\
       `--------`-------`--> FAILED

``SETUP`` runs the job's setup script (possibly retried, see ``stage:setup_failure``) and
``RUN`` starts the run script.  Without a readiness probe the node is ``READY`` as soon as the
run script starts; with one, only once the probe succeeds.  A nonzero exit of either script
fails the node, and so does a readiness probe that never succeeds.  In the last case the run
script is left running so it can be inspected; it is killed on teardown.
"""
import enum
import hashlib
import os
import threading
import time
from typing import TYPE_CHECKING

from .environment import EnvironmentFrame
from .environment import expand_data
from .error import ClusterConnectError
from .error import ProbeTimeoutError
from .error import ScriptExitError
from .futures import Future
from .jobspec import JobSpec
from .logging import get_logger
from .probe import ReadinessProber
from .util import make_template_env

if TYPE_CHECKING:
    from .cluster import ClusterHandle
    from .config import Config
    from .provision import NodeConnection

logger = get_logger(__name__)


class NodeState(enum.Enum):
    INIT = "init"
    SETUP = "setup"
    RUN = "run"
    READY = "ready"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self in (NodeState.READY, NodeState.FAILED)


class CancelledError(ClusterConnectError):
    pass


class NodeExecutor:
    marker = os.path.join(".cluster_connect", "setup.done")

    def __init__(
        self,
        spec: JobSpec,
        cluster: "ClusterHandle",
        connection: "NodeConnection",
        frame: EnvironmentFrame,
        *,
        config: "Config | None" = None,
        log_dir: str | None = None,
        probe_url: str | None = None,
    ) -> None:
        if config is None:
            from .config import Config

            config = Config()
        self.spec = spec
        self.cluster = cluster
        self.connection = connection
        self.frame = frame
        self.config = config
        self.log_dir = log_dir
        self.probe_url = probe_url
        self.rank = connection.node.rank
        self.state = NodeState.INIT
        self.transitions: list[tuple[NodeState, float]] = [(NodeState.INIT, time.time())]
        self.error: ClusterConnectError | None = None
        self.returncodes: dict[str, int] = {}
        self.future: Future | None = None
        self.prober: ReadinessProber | None = None
        self.settled = threading.Event()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"NodeExecutor({self.spec.name}, rank={self.rank}, {self.state.name})"

    def transition(self, state: NodeState, error: ClusterConnectError | None = None) -> None:
        with self._lock:
            if self.state == NodeState.FAILED:
                return
            logger.debug(f"rank {self.rank}: {self.state.name} -> {state.name}")
            self.state = state
            self.transitions.append((state, time.time()))
            if error is not None:
                self.error = error
            if state.settled:
                self.settled.set()

    def fail(self, error: ClusterConnectError) -> NodeState:
        logger.error(str(error))
        self.transition(NodeState.FAILED, error=error)
        return self.state

    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(self) -> NodeState:
        """Run the setup and run stages.  Returns once the run script exits or, for a
        service whose readiness probe failed, once the probe gives up"""
        try:
            if not self.run_setup():
                return self.state
            return self.run_stage()
        except ClusterConnectError as e:
            return self.fail(e)
        finally:
            self.settled.set()

    def setup_digest(self) -> str:
        variables = sorted(f"{k}={v}" for k, v in self.frame.items())
        text = "\n".join([self.spec.setup or "", *variables])
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def run_setup(self) -> bool:
        self.transition(NodeState.SETUP)
        if not (self.spec.setup or "").strip():
            return True
        digest = self.setup_digest()
        if self.config.get("stage:skip_completed_setup"):
            if self.connection.read_text(self.marker) == digest:
                logger.info(f"rank {self.rank}: setup already completed, skipping")
                return True
        attempts = 1
        if self.config.get("stage:setup_failure") == "retry":
            attempts += int(self.config.get("stage:setup_retries") or 0)
        delay = float(self.config.get("stage:retry_delay") or 0)
        for attempt in range(1, attempts + 1):
            future = self.spawn("setup", self.spec.setup)
            rc = future.result()
            self.returncodes["setup"] = rc
            if self.cancelled():
                self.fail(CancelledError(f"rank {self.rank}: cancelled during setup"))
                return False
            if rc == 0:
                self.connection.write_text(self.marker, digest)
                return True
            if attempt < attempts:
                logger.warning(
                    f"rank {self.rank}: setup exited with status {rc}, "
                    f"retrying in {delay}s ({attempt}/{attempts - 1})"
                )
                if self._cancelled.wait(delay):
                    self.fail(CancelledError(f"rank {self.rank}: cancelled during setup"))
                    return False
                continue
            self.fail(ScriptExitError(self.rank, "setup", rc, future.proc.stderr_tail()))
        return False

    def run_stage(self) -> NodeState:
        self.transition(NodeState.RUN)
        if not (self.spec.run or "").strip():
            self.transition(NodeState.READY)
            return self.state
        start = time.monotonic()
        future = self.spawn("run", self.spec.run)
        if self.spec.readiness_probe is not None and self.rank == 0:
            prober = self.prober = self.make_prober()
            prober.start(start)
            # a run script that exits stops the probe
            future.add_done_callback(lambda f: prober.cancel())
            result = prober.join()
            if not result.succeeded:
                if future.done():
                    return self.run_exited(future, before_ready=True)
                if self.cancelled():
                    return self.fail(CancelledError(f"rank {self.rank}: cancelled during run"))
                return self.fail(ProbeTimeoutError(self.rank, result))
        self.transition(NodeState.READY)
        return self.run_exited(future, before_ready=False)

    def run_exited(self, future: Future, before_ready: bool) -> NodeState:
        rc = future.result()
        self.returncodes["run"] = rc
        if self.cancelled():
            if before_ready:
                return self.fail(CancelledError(f"rank {self.rank}: cancelled during run"))
            return self.state
        if rc != 0 or before_ready:
            stderr = future.proc.stderr_tail()
            if before_ready and rc == 0:
                stderr = f"run script exited before the service became ready\n{stderr}"
            return self.fail(ScriptExitError(self.rank, "run", rc, stderr))
        logger.info(f"rank {self.rank}: run completed")
        return self.state

    def make_prober(self) -> ReadinessProber:
        probe = self.spec.readiness_probe
        if probe is None:
            raise ValueError(f"job {self.spec.name} has no readiness probe")
        url = self.probe_url or self.default_probe_url()
        return ReadinessProber(
            probe,
            url,
            post_data=expand_data(probe.post_data, self.frame),
            interval=self.config.get("probe:interval"),
            timeout=self.config.get("probe:timeout"),
            timeout_factor=self.config.get("probe:timeout_factor"),
            request_timeout=self.config.get("probe:request_timeout"),
        )

    def default_probe_url(self) -> str:
        probe = self.spec.readiness_probe
        if probe is None:
            raise ValueError(f"job {self.spec.name} has no readiness probe")
        host = self.config.get("probe:host") or self.cluster.head.ip
        port = self.spec.resources.ports[0]
        return f"http://{host}:{port}{probe.path}"

    def render_script(self, stage: str, body: str) -> str:
        env = make_template_env()
        template = env.get_template("stage.sh.in")
        return template.render(
            job=self.spec.name,
            cluster=self.cluster.name,
            rank=self.rank,
            stage=stage,
            variables=self.frame.to_dict(),
            workdir=self.connection.workdir,
            body=body,
        )

    def spawn(self, stage: str, body: str) -> Future:
        if self.cancelled():
            raise CancelledError(f"rank {self.rank}: cancelled before {stage}")
        script = self.render_script(stage, body)
        log = None if self.log_dir is None else os.path.join(self.log_dir, f"{stage}.log")
        proc = self.connection.spawn(stage, script, log=log)
        logger.debug(f"rank {self.rank}: started {stage} (pid {proc.pid})")
        self.future = Future(proc, polling_interval=0.1)
        if self.cancelled():
            # cancelled while the script was starting
            self.future.cancel()
        return self.future

    def wait(self, timeout: float | None = None) -> NodeState:
        self.settled.wait(timeout=timeout)
        return self.state

    def tail(self) -> str:
        if self.future is None:
            return ""
        return self.future.proc.tail()

    def cancel(self) -> None:
        self._cancelled.set()
        if self.prober is not None:
            self.prober.cancel()
        if self.future is not None and not self.future.done():
            self.future.cancel()
