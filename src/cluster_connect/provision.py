# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import abc
import os
import threading
from typing import TYPE_CHECKING

import yaml

from .cluster import ClusterHandle
from .cluster import NodeHandle
from .cluster import NodeStatus
from .cluster import fingerprint
from .error import ProvisionError
from .jobspec import ResourceRequest
from .logging import get_logger
from .resources import MachineType
from .resources import ResourceResolver
from .util import sanitize_path

if TYPE_CHECKING:
    from .config import Config
    from .process import NodeProcess

logger = get_logger(__name__)


class NodeConnection(abc.ABC):
    """File and process operations on one node of a cluster.  Relative paths are relative to
    the node's working directory."""

    def __init__(self, node: NodeHandle) -> None:
        self.node = node

    @property
    def workdir(self) -> str:
        return self.node.root

    @abc.abstractmethod
    def realize(self, path: str) -> str:
        """Where ``path``, as written in a job specification, lives on the node"""

    @abc.abstractmethod
    def copy_in(self, source: str, path: str) -> str:
        """Copy the local file or directory ``source`` to ``path`` on the node"""

    @abc.abstractmethod
    def link(self, target: str, path: str) -> str:
        """Expose the shared directory ``target`` at ``path`` on the node"""

    @abc.abstractmethod
    def unlink(self, path: str) -> None: ...

    @abc.abstractmethod
    def exists(self, path: str) -> bool: ...

    @abc.abstractmethod
    def write_text(self, path: str, text: str) -> None: ...

    @abc.abstractmethod
    def read_text(self, path: str) -> str | None: ...

    @abc.abstractmethod
    def remove(self, path: str) -> None: ...

    @abc.abstractmethod
    def spawn(self, name: str, script: str, log: str | None = None) -> "NodeProcess":
        """Start executing the shell ``script`` on the node"""


class ClusterRegistry:
    """Persistent record of provisioned clusters, one yaml file per cluster"""

    lock = threading.RLock()

    def __init__(self, state_dir: str) -> None:
        self.dir = os.path.join(state_dir, "clusters")

    def filename(self, name: str) -> str:
        return sanitize_path(os.path.join(self.dir, f"{name}.yaml"))

    def get(self, name: str) -> ClusterHandle | None:
        file = self.filename(name)
        with self.lock:
            if not os.path.exists(file):
                return None
            with open(file) as fh:
                data = yaml.safe_load(fh)
        return ClusterHandle.from_dict(data)

    def save(self, cluster: ClusterHandle) -> None:
        file = self.filename(cluster.name)
        with self.lock:
            os.makedirs(self.dir, exist_ok=True)
            with open(file, "w") as fh:
                yaml.safe_dump(cluster.to_dict(), fh, default_flow_style=False)

    def remove(self, name: str) -> None:
        with self.lock:
            file = self.filename(name)
            if os.path.exists(file):
                os.remove(file)

    def clusters(self) -> list[ClusterHandle]:
        if not os.path.isdir(self.dir):
            return []
        clusters: list[ClusterHandle] = []
        for f in sorted(os.listdir(self.dir)):
            if f.endswith(".yaml"):
                if cluster := self.get(f[:-5]):
                    clusters.append(cluster)
        return clusters


class Provisioner(abc.ABC):
    name = "<provisioner>"

    def __init__(self, config: "Config | None" = None) -> None:
        if config is None:
            from .config import Config

            config = Config()
        self.config = config
        self.registry = ClusterRegistry(config.state_dir)
        self.resolver = ResourceResolver(config)

    @staticmethod
    @abc.abstractmethod
    def matches(name: str | None) -> bool: ...

    @abc.abstractmethod
    def allocate(
        self, name: str, machine: MachineType, num_nodes: int, fingerprint: str
    ) -> ClusterHandle:
        """Allocate ``num_nodes`` nodes of type ``machine``.  Raise ProvisionError if the
        backend cannot supply them"""

    @abc.abstractmethod
    def is_live(self, cluster: ClusterHandle) -> bool:
        """Are the cluster's nodes still allocated and reachable?"""

    @abc.abstractmethod
    def release(self, cluster: ClusterHandle) -> None:
        """Free the infrastructure backing ``cluster``"""

    @abc.abstractmethod
    def connect(self, node: NodeHandle) -> NodeConnection: ...

    def provision(self, name: str, request: ResourceRequest, num_nodes: int) -> ClusterHandle:
        """Return a cluster of exactly ``num_nodes`` nodes satisfying ``request``.  A live
        cluster already registered under ``name`` is reused."""
        if num_nodes < 1:
            raise ProvisionError(f"cluster {name}: num_nodes must be at least 1")
        digest = fingerprint(self.name, request, num_nodes)
        with ClusterRegistry.lock:
            if existing := self.registry.get(name):
                if existing.backend != self.name:
                    raise ProvisionError(
                        f"cluster {name} exists on backend {existing.backend!r}; "
                        "terminate it first or launch under another name"
                    )
                if self.is_live(existing):
                    if existing.fingerprint != digest:
                        raise ProvisionError(
                            f"cluster {name} is already running with different resources; "
                            "terminate it first or launch under another name"
                        )
                    logger.info(f"reusing cluster {name} ({len(existing)} node(s))")
                    return existing
                logger.debug(f"discarding stale record of cluster {name}")
                self.registry.remove(name)
            candidates = self.resolver.resolve(request)
            self.check_quota(name, num_nodes)
            errors: list[str] = []
            for machine in candidates:
                try:
                    cluster = self.allocate(name, machine, num_nodes, digest)
                except ProvisionError as e:
                    logger.warning(f"failed to allocate {machine.instance_type}: {e}")
                    errors.append(f"{machine.cloud}/{machine.instance_type}: {e}")
                    continue
                if len(cluster) != num_nodes:
                    self.release(cluster)
                    raise ProvisionError(
                        f"{self.name} allocated {len(cluster)} node(s), expected {num_nodes}"
                    )
                self.registry.save(cluster)
                logger.info(
                    f"provisioned cluster {name}: {num_nodes} x {machine.instance_type}, "
                    f"head at {cluster.head.ip}"
                )
                return cluster
        raise ProvisionError(
            f"capacity unavailable for cluster {name}:\n  " + "\n  ".join(errors)
        )

    def check_quota(self, name: str, num_nodes: int) -> None:
        limit = self.config.get("provision:max_nodes") or 0
        if not limit:
            return
        in_use = sum(
            len(c) for c in self.registry.clusters() if c.backend == self.name and c.name != name
        )
        if in_use + num_nodes > limit:
            raise ProvisionError(
                f"quota exceeded: {num_nodes} node(s) requested, {in_use} of {limit} in use"
            )

    def terminate(self, name: str) -> None:
        cluster = self.registry.get(name)
        if cluster is None:
            logger.debug(f"cluster {name} not found, nothing to terminate")
            return
        logger.info(f"terminating cluster {name}")
        self.release(cluster)
        for node in cluster.nodes:
            node.status = NodeStatus.TERMINATED
        self.registry.remove(name)

    def connections(self, cluster: ClusterHandle) -> list[NodeConnection]:
        return [self.connect(node) for node in cluster.nodes]


def factory(config: "Config | None" = None) -> Provisioner:
    if config is None:
        from .config import Config

        config = Config()
    backend = config.get("provision:backend")
    provisioner = config.pluginmanager.hook.cluster_connect_provisioner(config=config)
    if provisioner is None:
        raise ValueError(f"No matching provisioner for {backend!r}")
    return provisioner
