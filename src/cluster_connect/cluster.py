# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import enum
import hashlib
import json
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from .jobspec import ResourceRequest


class NodeStatus(enum.Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class NodeHandle:
    rank: int
    ip: str
    status: NodeStatus = NodeStatus.PROVISIONING
    # working directory on the node
    root: str = "."
    # address used to reach the node, if it is not the local host
    host: str | None = None

    @property
    def is_head(self) -> bool:
        return self.rank == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "ip": self.ip,
            "status": self.status.value,
            "root": self.root,
            "host": self.host,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeHandle":
        return cls(
            rank=int(data["rank"]),
            ip=data["ip"],
            status=NodeStatus(data["status"]),
            root=data.get("root", "."),
            host=data.get("host"),
        )


@dataclass
class ClusterHandle:
    """Nodes of a provisioned cluster, in rank order.  Owned by the provisioner that created
    it; everyone else treats it as read only."""

    name: str
    backend: str
    instance_type: str
    fingerprint: str
    nodes: tuple[NodeHandle, ...] = ()
    accelerators_per_node: int = 0
    extras: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.nodes = tuple(sorted(self.nodes, key=lambda n: n.rank))
        ranks = [node.rank for node in self.nodes]
        if ranks != list(range(len(self.nodes))):
            raise ValueError(f"cluster {self.name}: node ranks must be 0..N-1, got {ranks}")

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def head(self) -> NodeHandle:
        return self.nodes[0]

    @property
    def ips(self) -> list[str]:
        return [node.ip for node in self.nodes]

    @property
    def ready(self) -> bool:
        return bool(self.nodes) and all(n.status == NodeStatus.READY for n in self.nodes)

    def node(self, rank: int) -> NodeHandle:
        if not 0 <= rank < len(self.nodes):
            raise IndexError(f"cluster {self.name} has no node with rank {rank}")
        return self.nodes[rank]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "backend": self.backend,
            "instance_type": self.instance_type,
            "fingerprint": self.fingerprint,
            "accelerators_per_node": self.accelerators_per_node,
            "nodes": [node.to_dict() for node in self.nodes],
            "extras": dict(self.extras),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterHandle":
        return cls(
            name=data["name"],
            backend=data["backend"],
            instance_type=data["instance_type"],
            fingerprint=data["fingerprint"],
            accelerators_per_node=int(data.get("accelerators_per_node", 0)),
            nodes=tuple(NodeHandle.from_dict(_) for _ in data.get("nodes", [])),
            extras=dict(data.get("extras") or {}),
        )


def fingerprint(backend: str, request: ResourceRequest, num_nodes: int) -> str:
    """Digest of everything that makes two clusters interchangeable"""
    data = {"backend": backend, "resources": request.to_dict(), "num_nodes": num_nodes}
    text = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
