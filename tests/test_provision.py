# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import os

import pytest

from cluster_connect.cluster import ClusterHandle
from cluster_connect.cluster import NodeHandle
from cluster_connect.cluster import NodeStatus
from cluster_connect.error import ProvisionError
from cluster_connect.jobspec import ResourceRequest
from cluster_connect.local import LocalProvisioner
from cluster_connect.provision import ClusterRegistry
from cluster_connect.provision import factory


def gpu_request(**kwargs):
    return ResourceRequest.from_dict({"accelerators": "A100-80GB:1", **kwargs})


def test_provision_local(config):
    provisioner = factory(config)
    assert isinstance(provisioner, LocalProvisioner)
    cluster = provisioner.provision("train", gpu_request(), 3)
    assert len(cluster) == 3
    assert [node.rank for node in cluster.nodes] == [0, 1, 2]
    assert cluster.head.rank == 0 and cluster.head.is_head
    assert cluster.ips == ["127.0.0.1", "127.0.0.2", "127.0.0.3"]
    assert cluster.accelerators_per_node == 1
    assert cluster.instance_type == "a2-ultragpu-1g"
    assert cluster.ready
    for node in cluster.nodes:
        assert os.path.isdir(node.root)
    assert os.path.exists(os.path.join(config.state_dir, "clusters", "train.yaml"))


def test_provision_is_idempotent(config):
    provisioner = factory(config)
    first = provisioner.provision("train", gpu_request(), 2)
    marker = os.path.join(first.head.root, "marker")
    with open(marker, "w") as fh:
        fh.write("still here")
    # a new provisioner, as from a later process
    second = factory(config).provision("train", gpu_request(), 2)
    assert second.fingerprint == first.fingerprint
    assert second.ips == first.ips
    assert os.path.exists(marker)
    assert len(ClusterRegistry(config.state_dir).clusters()) == 1


def test_provision_fingerprint_mismatch(config):
    provisioner = factory(config)
    provisioner.provision("train", gpu_request(), 2)
    with pytest.raises(ProvisionError, match="different resources"):
        provisioner.provision("train", gpu_request(), 3)
    with pytest.raises(ProvisionError, match="different resources"):
        provisioner.provision("train", gpu_request(cpus=16), 2)


def test_provision_stale_record(config):
    provisioner = factory(config)
    cluster = provisioner.provision("train", gpu_request(), 2)
    provisioner.release(cluster)
    assert not provisioner.is_live(cluster)
    # record points at nodes that no longer exist, so it is replaced
    again = provisioner.provision("train", gpu_request(), 3)
    assert len(again) == 3


def test_provision_quota(config):
    config.set("provision:max_nodes", 3, scope="internal")
    provisioner = factory(config)
    provisioner.provision("a", ResourceRequest(), 2)
    with pytest.raises(ProvisionError, match="quota exceeded"):
        provisioner.provision("b", ResourceRequest(), 2)
    provisioner.provision("c", ResourceRequest(), 1)
    provisioner.terminate("a")
    provisioner.provision("b", ResourceRequest(), 2)


def test_provision_invalid_request(config):
    provisioner = factory(config)
    with pytest.raises(ProvisionError, match="invalid accelerator spec"):
        provisioner.provision("x", ResourceRequest(accelerators={"Z80": 1}), 1)
    with pytest.raises(ProvisionError):
        provisioner.provision("x", ResourceRequest(), 0)
    assert ClusterRegistry(config.state_dir).get("x") is None


def test_terminate(config):
    provisioner = factory(config)
    cluster = provisioner.provision("train", ResourceRequest(), 2)
    provisioner.terminate("train")
    for node in cluster.nodes:
        assert not os.path.exists(node.root)
    assert ClusterRegistry(config.state_dir).get("train") is None
    # terminating an unknown cluster is not an error
    provisioner.terminate("train")


def test_provision_failover(config):
    tried = []

    class Flaky(LocalProvisioner):
        def allocate(self, name, machine, num_nodes, fingerprint):
            tried.append(machine.instance_type)
            if len(tried) == 1:
                raise ProvisionError("zone exhausted")
            return super().allocate(name, machine, num_nodes, fingerprint)

    cluster = Flaky(config).provision("train", gpu_request(), 1)
    assert len(tried) == 2
    assert cluster.instance_type == tried[1]


def test_provision_all_candidates_fail(config):
    class Empty(LocalProvisioner):
        def allocate(self, name, machine, num_nodes, fingerprint):
            raise ProvisionError("no capacity in zone")

    with pytest.raises(ProvisionError, match="capacity unavailable"):
        Empty(config).provision("train", gpu_request(), 1)


def test_unknown_backend(config):
    config.set("provision:backend", "nope", scope="internal")
    with pytest.raises(ValueError, match="No matching provisioner"):
        factory(config)


def test_node_status_round_trip(config):
    cluster = factory(config).provision("train", ResourceRequest(), 2)
    loaded = ClusterRegistry(config.state_dir).get("train")
    assert loaded.to_dict() == cluster.to_dict()
    assert all(node.status == NodeStatus.READY for node in loaded.nodes)


def test_provision_name_held_by_other_backend(config):
    registry = ClusterRegistry(config.state_dir)
    node = NodeHandle(rank=0, ip="10.0.0.1", status=NodeStatus.READY, root="work", host="node01")
    remote = ClusterHandle(
        name="train", backend="ssh", instance_type="m6i.2xlarge", fingerprint="abc", nodes=(node,)
    )
    registry.save(remote)
    with pytest.raises(ProvisionError, match="exists on backend 'ssh'"):
        factory(config).provision("train", ResourceRequest(), 1)
    # the other backend's record is left alone
    assert registry.get("train").to_dict() == remote.to_dict()
