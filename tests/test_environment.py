# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import pytest

from cluster_connect import jobspec
from cluster_connect.cluster import ClusterHandle
from cluster_connect.cluster import NodeHandle
from cluster_connect.cluster import NodeStatus
from cluster_connect.environment import check_unbound
from cluster_connect.environment import expand
from cluster_connect.environment import expand_data
from cluster_connect.environment import materialize
from cluster_connect.environment import referenced_variables
from cluster_connect.environment import resolve_mounts
from cluster_connect.error import UnboundVariableError
from cluster_connect.jobspec import MountBinding
from cluster_connect.jobspec import MountMode
from cluster_connect.storage import BoundMount
from cluster_connect.storage import StoreLocation


def make_cluster(n, gpus=0):
    nodes = [NodeHandle(rank=i, ip=f"10.0.0.{10 + i}", status=NodeStatus.READY) for i in range(n)]
    return ClusterHandle(
        name="c", backend="test", instance_type="t", fingerprint="f", nodes=tuple(nodes),
        accelerators_per_node=gpus,
    )


def test_injected_variables():
    spec = jobspec.loads("envs: {A: '1'}\nrun: echo $CCX_NODE_RANK\n", name="job")
    cluster = make_cluster(3, gpus=8)
    frames = [materialize(spec, cluster, rank) for rank in range(3)]
    for rank, frame in enumerate(frames):
        assert frame.rank == rank
        assert frame["CCX_NODE_RANK"] == str(rank)
        assert frame["CCX_NUM_NODES"] == "3"
        assert frame["CCX_NUM_GPUS_PER_NODE"] == "8"
        assert frame["CCX_CLUSTER_NAME"] == "c"
        assert frame["CCX_HEAD_IP"] == "10.0.0.10"
        assert frame["A"] == "1"
    ip_lists = {frame["CCX_NODE_IPS"] for frame in frames}
    assert len(ip_lists) == 1
    (ips,) = ip_lists
    assert ips.splitlines() == ["10.0.0.10", "10.0.0.11", "10.0.0.12"]


def test_layering():
    spec = jobspec.loads("envs: {A: job, B: job, CCX_NODE_RANK: bogus}\n")
    frame = materialize(spec, make_cluster(2), 1, overrides={"B": "override", "C": 3})
    assert frame["A"] == "job"
    assert frame["B"] == "override"
    assert frame["C"] == "3"
    # injected variables win over the job's defaults
    assert frame["CCX_NODE_RANK"] == "1"
    frame = materialize(spec, make_cluster(2), 1, overrides={"CCX_NODE_RANK": "7"})
    assert frame["CCX_NODE_RANK"] == "7"


def test_unbound_variable(sample):
    spec = jobspec.load(sample("nemo_gpt_distributed.yaml"))
    with pytest.raises(UnboundVariableError) as exc:
        check_unbound(spec)
    assert exc.value.names == ["SHARED_NFS_BUCKET_NAME"]
    with pytest.raises(UnboundVariableError):
        materialize(spec, make_cluster(2), 0)
    check_unbound(spec, {"SHARED_NFS_BUCKET_NAME": "my-bucket"})
    # None is not a value
    with pytest.raises(UnboundVariableError):
        check_unbound(spec, {"SHARED_NFS_BUCKET_NAME": None})


def test_unbound_in_scripts():
    spec = jobspec.loads("envs: {TOKEN: null}\nrun: echo ${TOKEN} $HOME\n")
    with pytest.raises(UnboundVariableError, match="TOKEN"):
        check_unbound(spec)
    frame = materialize(spec, make_cluster(1), 0, overrides={"TOKEN": "abc"})
    assert frame["TOKEN"] == "abc"
    # declared but never referenced is fine
    spec = jobspec.loads("envs: {TOKEN: null}\nrun: echo $HOME\n")
    frame = materialize(spec, make_cluster(1), 0)
    assert "TOKEN" not in frame


def test_unbound_in_probe_payload():
    text = (
        "resources: {ports: 8080}\n"
        "service: {readiness_probe: {path: /, post_data: {model: $MODEL, rank: $CCX_NODE_RANK}}}\n"
    )
    spec = jobspec.loads(text)
    with pytest.raises(UnboundVariableError) as exc:
        check_unbound(spec)
    assert exc.value.names == ["MODEL"]
    check_unbound(spec, {"MODEL": "m"})


def test_resolve_mounts(sample):
    spec = jobspec.load(sample("nemo_gpt_distributed.yaml"))
    with pytest.raises(UnboundVariableError):
        resolve_mounts(spec)
    dataset, shared = resolve_mounts(spec, {"SHARED_NFS_BUCKET_NAME": "nemo-shared"})
    assert dataset.path == "/wiki"
    assert dataset.source == "gs://sky-wiki-data"
    assert shared.path == "/shared"
    assert shared.name == "nemo-shared"
    assert shared.mode == MountMode.MOUNT


def test_mount_handles_are_substituted():
    spec = jobspec.loads("envs: {SHARED: /shared, OTHER: /other}\n")
    cluster = make_cluster(2)
    bound = BoundMount(
        binding=MountBinding("/shared", MountMode.MOUNT, name="b", store="gcs"),
        location=StoreLocation(store="gcs", bucket="b", path="/buckets/gcs/b"),
        node_paths=["/n0/shared", "/n1/shared"],
    )
    assert materialize(spec, cluster, 0, mounts=[bound])["SHARED"] == "/n0/shared"
    assert materialize(spec, cluster, 1, mounts=[bound])["SHARED"] == "/n1/shared"
    assert materialize(spec, cluster, 1, mounts=[bound])["OTHER"] == "/other"


def test_expand():
    variables = {"A": "x", "B_2": "y"}
    assert expand("$A/${B_2}/$A$A", variables) == "x/y/xx"
    assert expand("cost: $5", variables) == "cost: $5"
    with pytest.raises(UnboundVariableError):
        expand("$A $C", variables)
    assert expand("$A $C", variables, strict=False) == "x $C"
    data = {"model": "$A", "messages": [{"content": "${B_2}"}], "n": 1}
    assert expand_data(data, variables) == {"model": "x", "messages": [{"content": "y"}], "n": 1}
    assert referenced_variables("${A} $B c$D_1 $") == {"A", "B", "D_1"}


def test_invalid_variable_names():
    spec = jobspec.loads("envs: {GREETING: hi}\nrun: echo $GREETING\n")
    check_unbound(spec, {"_PRIVATE": "1", "Model2": "x"})
    for name in ("MODEL-NAME", "2FAST", "A;touch pwned", "NAME\n", ""):
        with pytest.raises(ValueError, match="invalid environment variable name"):
            check_unbound(spec, {name: "x"})
    # a spec built in code bypasses the yaml schema
    bad = spec.with_updates(envs={"MODEL NAME": "t5"})
    with pytest.raises(ValueError):
        materialize(bad, make_cluster(1), 0)
