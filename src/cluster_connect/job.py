# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
"""
Jobs
----

A :class:`Job` carries a job specification through the whole launch:

1. check that every variable the job references has a value;
2. provision (or reuse) the cluster;
3. bind the file mounts on every node;
4. materialize each node's environment;
5. execute the setup and run stages on every node concurrently.

Steps 1-4 complete before any node enters setup, and any error they raise propagates out of
:meth:`Job.launch` before a script has run.  Errors of individual nodes are collected in
:class:`JobResult` instead.

.. code-block:: python

   spec = jobspec.load("serve.yaml")
   with Job(spec, overrides={"MODEL_NAME": "vicuna-7b"}) as job:
       result = job.wait_ready()
       assert result.status == JobStatus.READY
"""
import datetime
import enum
import os
import time
from concurrent.futures import Future as PoolFuture
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_all
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any
from typing import Mapping

from . import jobspec
from .cluster import ClusterHandle
from .environment import EnvironmentFrame
from .environment import check_unbound
from .environment import materialize
from .environment import resolve_mounts
from .error import ClusterConnectError
from .jobspec import JobSpec
from .logging import get_logger
from .provision import Provisioner
from .provision import factory
from .stage import NodeExecutor
from .stage import NodeState
from .storage import BoundMount
from .storage import StorageBinder

if TYPE_CHECKING:
    from .config import Config

logger = get_logger(__name__)


class JobStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    READY = "ready"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class JobResult:
    status: JobStatus
    cluster: ClusterHandle | None = None
    states: dict[int, NodeState] = field(default_factory=dict)
    returncodes: dict[int, dict[str, int]] = field(default_factory=dict)
    errors: dict[int, ClusterConnectError] = field(default_factory=dict)
    # have all nodes stopped executing?
    finished: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (JobStatus.READY, JobStatus.TERMINATED) and not self.errors


class Job:
    def __init__(
        self,
        spec: JobSpec,
        cluster_name: str | None = None,
        overrides: Mapping[str, Any] | None = None,
        config: "Config | None" = None,
        all_or_nothing: bool = False,
    ) -> None:
        if config is None:
            from .config import Config

            config = Config()
        self.spec = spec
        self.cluster_name = cluster_name or spec.name
        self.overrides = dict(overrides or {})
        self.config = config
        self.all_or_nothing = all_or_nothing
        self.provisioner: Provisioner | None = None
        self.cluster: ClusterHandle | None = None
        self.binder = StorageBinder(config)
        self.mounts: list[BoundMount] = []
        self.frames: list[EnvironmentFrame] = []
        self.executors: list[NodeExecutor] = []
        self.log_dir: str | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._futures: list[PoolFuture] = []
        self._terminated = False

    def __repr__(self) -> str:
        return f"Job({self.spec.name}, cluster={self.cluster_name}, {self.status.name})"

    def __enter__(self) -> "Job":
        return self.launch()

    def __exit__(self, *args: Any) -> None:
        self.teardown()

    def launch(self) -> "Job":
        if self.executors:
            raise ValueError(f"job {self.spec.name} has already been launched")
        if self.spec.replicas > 1:
            logger.warning(f"{self.spec.name}: launching 1 of {self.spec.replicas} replicas")
        check_unbound(self.spec, self.overrides)
        bindings = resolve_mounts(self.spec, self.overrides)
        self.provisioner = factory(self.config)
        self.cluster = self.provisioner.provision(
            self.cluster_name, self.spec.resources, self.spec.num_nodes
        )
        connections = self.provisioner.connections(self.cluster)
        self.mounts = self.binder.bind(connections, list(bindings))
        self.frames = [
            materialize(self.spec, self.cluster, node.rank, self.overrides, self.mounts)
            for node in self.cluster.nodes
        ]
        stamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        self.log_dir = os.path.join(self.config.log_dir, self.cluster.name, stamp)
        for conn, frame in zip(connections, self.frames):
            executor = NodeExecutor(
                self.spec,
                self.cluster,
                conn,
                frame,
                config=self.config,
                log_dir=os.path.join(self.log_dir, f"rank-{conn.node.rank}"),
            )
            self.executors.append(executor)
        logger.info(
            f"launching {self.spec.name} on {len(self.cluster)} node(s) of {self.cluster.name}"
        )
        self._pool = ThreadPoolExecutor(
            max_workers=len(self.executors), thread_name_prefix=f"{self.cluster.name}-node"
        )
        for executor in self.executors:
            future = self._pool.submit(executor.execute)
            future.add_done_callback(lambda f, ex=executor: self.node_finished(ex))
            self._futures.append(future)
        return self

    def node_finished(self, executor: NodeExecutor) -> None:
        if executor.state != NodeState.FAILED or not self.all_or_nothing:
            return
        for other in self.executors:
            if other is not executor and not other.cancelled():
                logger.warning(f"rank {executor.rank} failed, cancelling rank {other.rank}")
                other.cancel()

    @property
    def status(self) -> JobStatus:
        if self._terminated:
            return JobStatus.TERMINATED
        if not self.executors:
            return JobStatus.PENDING
        states = [ex.state for ex in self.executors]
        if any(state == NodeState.FAILED for state in states):
            return JobStatus.FAILED
        if all(state == NodeState.READY for state in states):
            return JobStatus.READY
        return JobStatus.RUNNING

    def result(self) -> JobResult:
        return JobResult(
            status=self.status,
            cluster=self.cluster,
            states={ex.rank: ex.state for ex in self.executors},
            returncodes={ex.rank: dict(ex.returncodes) for ex in self.executors},
            errors={ex.rank: ex.error for ex in self.executors if ex.error is not None},
            finished=all(f.done() for f in self._futures),
        )

    def wait(self, timeout: float | None = None) -> JobResult:
        """Wait for every node to stop executing"""
        wait_all(self._futures, timeout=timeout)
        return self.result()

    def wait_ready(self, timeout: float | None = None) -> JobResult:
        """Wait for every node to become ready or fail"""
        deadline = None if timeout is None else time.monotonic() + timeout
        for executor in self.executors:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            executor.wait(timeout=remaining)
        return self.result()

    def tail(self, rank: int) -> str:
        return self.executors[rank].tail()

    def teardown(self, down: bool = False) -> JobResult:
        """Stop every node's scripts and probes and release the file mounts.  With ``down``
        the cluster is terminated too; otherwise it stays up for the next launch"""
        for executor in self.executors:
            executor.cancel()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        result = self.result()
        self.binder.unbind()
        if down and self.provisioner is not None and self.cluster is not None:
            self.provisioner.terminate(self.cluster.name)
        self._terminated = True
        return result


def launch(
    spec: JobSpec | str,
    cluster_name: str | None = None,
    overrides: Mapping[str, Any] | None = None,
    config: "Config | None" = None,
    all_or_nothing: bool = False,
) -> Job:
    """Load ``spec`` (a JobSpec or the path to a yaml file) and launch it"""
    if isinstance(spec, str):
        spec = jobspec.load(spec)
    job = Job(
        spec,
        cluster_name=cluster_name,
        overrides=overrides,
        config=config,
        all_or_nothing=all_or_nothing,
    )
    return job.launch()
