# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import os
import shutil
import stat
from typing import TYPE_CHECKING

from .cluster import ClusterHandle
from .cluster import NodeHandle
from .cluster import NodeStatus
from .error import ProvisionError
from .hookspec import hookimpl
from .logging import get_logger
from .process import NodeProcess
from .provision import NodeConnection
from .provision import Provisioner
from .resources import MachineType
from .util import sanitize_path
from .util import set_executable

if TYPE_CHECKING:
    from .config import Config

logger = get_logger(__name__)


class LocalProvisioner(Provisioner):
    """Simulated cluster on this host.  Every node is a private working directory and is
    addressed as ``127.0.0.<rank + 1>``; the kernel routes all of 127/8 to loopback."""

    name = "local"

    @staticmethod
    def matches(name: str | None) -> bool:
        return name in (None, "local", "shell", "subprocess")

    @property
    def workdir(self) -> str:
        if path := self.config.get("provision:workdir"):
            return os.path.abspath(os.path.expanduser(path))
        return os.path.join(self.config.state_dir, "nodes")

    def allocate(
        self, name: str, machine: MachineType, num_nodes: int, fingerprint: str
    ) -> ClusterHandle:
        if num_nodes > 254:
            raise ProvisionError(f"the local backend supports at most 254 nodes, not {num_nodes}")
        cluster_dir = sanitize_path(os.path.join(self.workdir, name))
        nodes: list[NodeHandle] = []
        for rank in range(num_nodes):
            root = os.path.join(cluster_dir, f"node-{rank}")
            try:
                os.makedirs(root, exist_ok=True)
            except OSError as e:
                raise ProvisionError(f"unable to create node directory {root}: {e}") from e
            nodes.append(
                NodeHandle(rank=rank, ip=f"127.0.0.{rank + 1}", status=NodeStatus.READY, root=root)
            )
        return ClusterHandle(
            name=name,
            backend=self.name,
            instance_type=machine.instance_type,
            fingerprint=fingerprint,
            nodes=tuple(nodes),
            accelerators_per_node=machine.accelerator_count,
            extras={"cloud": machine.cloud, "simulated": True},
        )

    def is_live(self, cluster: ClusterHandle) -> bool:
        return all(
            node.status == NodeStatus.READY and os.path.isdir(node.root) for node in cluster.nodes
        )

    def release(self, cluster: ClusterHandle) -> None:
        for node in cluster.nodes:
            if os.path.islink(node.root):
                os.unlink(node.root)
            elif os.path.isdir(node.root):
                shutil.rmtree(node.root)
        cluster_dir = os.path.dirname(cluster.head.root)
        if os.path.isdir(cluster_dir) and not os.listdir(cluster_dir):
            os.rmdir(cluster_dir)

    def connect(self, node: NodeHandle) -> "LocalConnection":
        return LocalConnection(node, tail=self.config.get("stage:log_tail") or 50)


class LocalConnection(NodeConnection):
    def __init__(self, node: NodeHandle, tail: int = 50) -> None:
        super().__init__(node)
        self.tail = tail
        sh = shutil.which("sh")
        if sh is None:
            raise ValueError("sh not found on PATH")
        self.sh = sh

    def realize(self, path: str) -> str:
        """Absolute paths are rebased under the node's working directory"""
        path = os.path.normpath(path.lstrip(os.sep) or ".")
        if path.startswith(os.pardir):
            raise ValueError(f"{path!r} escapes the node's working directory")
        return os.path.join(self.node.root, path)

    def copy_in(self, source: str, path: str) -> str:
        dest = self.realize(path)
        self.remove(path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        if os.path.isdir(source):
            shutil.copytree(source, dest, symlinks=True)
        else:
            shutil.copy2(source, dest)
        make_read_only(dest)
        return dest

    def link(self, target: str, path: str) -> str:
        dest = self.realize(path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        if os.path.islink(dest):
            os.unlink(dest)
        elif os.path.isdir(dest) and not os.listdir(dest):
            os.rmdir(dest)
        elif os.path.exists(dest):
            raise FileExistsError(f"{dest} exists and is not empty")
        os.symlink(target, dest, target_is_directory=True)
        return dest

    def unlink(self, path: str) -> None:
        dest = self.realize(path)
        if os.path.islink(dest):
            os.unlink(dest)

    def exists(self, path: str) -> bool:
        return os.path.exists(self.realize(path))

    def write_text(self, path: str, text: str) -> None:
        dest = self.realize(path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        with open(dest, "w") as fh:
            fh.write(text)

    def read_text(self, path: str) -> str | None:
        dest = self.realize(path)
        if not os.path.isfile(dest):
            return None
        with open(dest) as fh:
            return fh.read()

    def remove(self, path: str) -> None:
        dest = self.realize(path)
        if os.path.islink(dest) or os.path.isfile(dest):
            os.remove(dest)
        elif os.path.isdir(dest):
            shutil.rmtree(dest)

    def spawn(self, name: str, script: str, log: str | None = None) -> NodeProcess:
        file = self.realize(os.path.join(".cluster_connect", f"{name}.sh"))
        os.makedirs(os.path.dirname(file), exist_ok=True)
        with open(file, "w") as fh:
            fh.write(script)
        set_executable(file)
        return NodeProcess([self.sh, file], cwd=self.node.root, log=log, tail=self.tail)


def make_read_only(path: str) -> None:
    """Strip write bits from the files of a snapshot.  Directories stay writable so the
    snapshot can be removed with the node"""
    mask = ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
    if os.path.isfile(path):
        os.chmod(path, os.stat(path).st_mode & mask)
        return
    for dirname, _, files in os.walk(path):
        for f in files:
            file = os.path.join(dirname, f)
            if not os.path.islink(file):
                os.chmod(file, os.stat(file).st_mode & mask)


@hookimpl
def cluster_connect_provisioner(config: "Config") -> "LocalProvisioner | None":
    if LocalProvisioner.matches(config.get("provision:backend")):
        return LocalProvisioner(config=config)
    return None
