# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
"""
Clusters carved out of a static pool of hosts reachable over ssh.

.. code-block:: yaml

   cluster_connect:
     provision:
       backend: ssh
       ssh:
         hosts: [node01, node02, node03]
         user: me
         options: -o BatchMode=yes

MOUNT bindings are exposed on the hosts as symbolic links to the bucket under
``storage:root``, so the storage root must live on a filesystem the hosts share.  The
binder's visibility check fails the mount if it does not.
"""
import logging
import posixpath
import shlex
import shutil
import socket
import subprocess

from cluster_connect.cluster import ClusterHandle
from cluster_connect.cluster import NodeHandle
from cluster_connect.cluster import NodeStatus
from cluster_connect.error import ProvisionError
from cluster_connect.process import NodeProcess
from cluster_connect.provision import NodeConnection
from cluster_connect.provision import Provisioner
from cluster_connect.resources import MachineType

logger = logging.getLogger("cluster_connect.ssh.provision")


class RemoteCommandError(OSError):
    pass


class SSHProvisioner(Provisioner):
    name = "ssh"

    def __init__(self, config=None) -> None:
        super().__init__(config=config)
        ssh = shutil.which("ssh")
        if ssh is None:
            raise ValueError("ssh not found on PATH")
        self.ssh = ssh

    @staticmethod
    def matches(name: str | None) -> bool:
        return name == "ssh"

    @property
    def hosts(self) -> list[str]:
        return list(self.config.get("provision:ssh:hosts") or [])

    @property
    def options(self) -> list[str]:
        return list(self.config.get("provision:ssh:options") or [])

    @property
    def user(self) -> str | None:
        return self.config.get("provision:ssh:user")

    @property
    def workdir(self) -> str:
        return self.config.get("provision:ssh:workdir") or ".cluster_connect"

    def hosts_in_use(self, exclude: str | None = None) -> set[str]:
        in_use: set[str] = set()
        for cluster in self.registry.clusters():
            if cluster.backend == self.name and cluster.name != exclude:
                in_use.update(node.host for node in cluster.nodes if node.host)
        return in_use

    def allocate(
        self, name: str, machine: MachineType, num_nodes: int, fingerprint: str
    ) -> ClusterHandle:
        in_use = self.hosts_in_use(exclude=name)
        free = [host for host in self.hosts if host not in in_use]
        if len(free) < num_nodes:
            raise ProvisionError(
                f"{num_nodes} host(s) requested but only {len(free)} of {len(self.hosts)} are free"
            )
        root = posixpath.join(self.workdir, name)
        nodes: list[NodeHandle] = []
        for rank, host in enumerate(free[:num_nodes]):
            try:
                ip = socket.gethostbyname(host)
            except socket.gaierror as e:
                raise ProvisionError(f"unable to resolve {host}: {e}") from e
            node = NodeHandle(rank=rank, ip=ip, root=root, host=host)
            conn = self.connect(node)
            try:
                conn.check(f"mkdir -p {shlex.quote(root)}")
            except RemoteCommandError as e:
                raise ProvisionError(f"{host} is unreachable: {e}") from e
            node.status = NodeStatus.READY
            nodes.append(node)
        return ClusterHandle(
            name=name,
            backend=self.name,
            instance_type=machine.instance_type,
            fingerprint=fingerprint,
            nodes=tuple(nodes),
            accelerators_per_node=machine.accelerator_count,
            extras={"cloud": machine.cloud},
        )

    def is_live(self, cluster: ClusterHandle) -> bool:
        for node in cluster.nodes:
            if node.status != NodeStatus.READY or node.host not in self.hosts:
                return False
            try:
                if not self.connect(node).exists("."):
                    return False
            except RemoteCommandError as e:
                logger.debug(f"{node.host} is unreachable: {e}")
                return False
        return True

    def release(self, cluster: ClusterHandle) -> None:
        for node in cluster.nodes:
            try:
                self.connect(node).remove(".")
            except RemoteCommandError as e:
                logger.warning(f"failed to clean up {node.host}: {e}")

    def connect(self, node: NodeHandle) -> "SSHConnection":
        return SSHConnection(
            node,
            ssh=self.ssh,
            user=self.user,
            options=self.options,
            tail=self.config.get("stage:log_tail") or 50,
        )


class SSHConnection(NodeConnection):
    def __init__(
        self,
        node: NodeHandle,
        ssh: str = "ssh",
        user: str | None = None,
        options: list[str] | None = None,
        tail: int = 50,
    ) -> None:
        super().__init__(node)
        if node.host is None:
            raise ValueError(f"rank {node.rank} has no host")
        self.ssh = ssh
        self.target = node.host if user is None else f"{user}@{node.host}"
        self.options = list(options or [])
        self.tail = tail

    @property
    def prefix(self) -> list[str]:
        return [self.ssh, *self.options, self.target]

    def run(self, command: str, input: str | None = None) -> subprocess.CompletedProcess:
        p = subprocess.run(
            [*self.prefix, command], input=input, capture_output=True, text=True, check=False
        )
        if p.returncode == 255:
            # ssh itself failed
            raise RemoteCommandError(f"{self.target}: {p.stderr.strip()}")
        return p

    def check(self, command: str, input: str | None = None) -> None:
        p = self.run(command, input=input)
        if p.returncode != 0:
            raise RemoteCommandError(f"{self.target}: {command}: {p.stderr.strip()}")

    def realize(self, path: str) -> str:
        if posixpath.isabs(path):
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(self.node.root, path))

    def copy_in(self, source: str, path: str) -> str:
        dest = self.realize(path)
        q = shlex.quote(dest)
        self.check(f"rm -rf {q} && mkdir -p {shlex.quote(posixpath.dirname(dest))}")
        scp = shutil.which("scp")
        if scp is None:
            raise RemoteCommandError("scp not found on PATH")
        p = subprocess.run(
            [scp, "-r", "-p", "-q", *self.options, source, f"{self.target}:{dest}"],
            capture_output=True,
            text=True,
            check=False,
        )
        if p.returncode != 0:
            raise RemoteCommandError(f"scp {source} {self.target}:{dest}: {p.stderr.strip()}")
        self.check(f"find {q} -type f -exec chmod a-w {{}} +")
        return dest

    def link(self, target: str, path: str) -> str:
        dest = self.realize(path)
        q = shlex.quote(dest)
        self.check(
            f"mkdir -p {shlex.quote(posixpath.dirname(dest))} && "
            f"{{ [ -L {q} ] || rmdir {q} 2>/dev/null || [ ! -e {q} ]; }} && "
            f"ln -sfn {shlex.quote(target)} {q}"
        )
        return dest

    def unlink(self, path: str) -> None:
        q = shlex.quote(self.realize(path))
        self.check(f"if [ -L {q} ]; then rm {q}; fi")

    def exists(self, path: str) -> bool:
        return self.run(f"test -e {shlex.quote(self.realize(path))}").returncode == 0

    def write_text(self, path: str, text: str) -> None:
        dest = self.realize(path)
        d, q = shlex.quote(posixpath.dirname(dest)), shlex.quote(dest)
        self.check(f"mkdir -p {d} && cat > {q}", input=text)

    def read_text(self, path: str) -> str | None:
        p = self.run(f"cat {shlex.quote(self.realize(path))}")
        if p.returncode != 0:
            return None
        return p.stdout

    def remove(self, path: str) -> None:
        self.check(f"rm -rf {shlex.quote(self.realize(path))}")

    def spawn(self, name: str, script: str, log: str | None = None) -> NodeProcess:
        logger.debug(f"starting {name} on {self.target}")
        return NodeProcess([*self.prefix, "sh", "-s"], stdin=script, log=log, tail=self.tail)
