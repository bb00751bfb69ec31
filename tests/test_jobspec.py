# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import dataclasses

import pytest

from cluster_connect import jobspec
from cluster_connect.jobspec import MountMode
from cluster_connect.jobspec import ResourceRequest


def test_load_distributed_training(sample):
    spec = jobspec.load(sample("nemo_gpt_distributed.yaml"))
    assert spec.name == "nemo_gpt_distributed"
    assert spec.num_nodes == 2
    assert spec.resources.cpus == 8.0
    assert spec.resources.memory == 64.0
    assert dict(spec.resources.accelerators) == {"A100-80GB": 1}
    assert spec.resources.image_id == "docker:nvcr.io/nvidia/nemo:24.05"
    assert spec.envs["DATASET_ROOT"] == "/wiki"
    assert spec.envs["SHARED_NFS_BUCKET_NAME"] is None
    assert not spec.is_service
    dataset, shared = spec.file_mounts
    assert dataset.path == "${DATASET_ROOT}"
    assert dataset.mode == MountMode.COPY
    assert dataset.source == "gs://sky-wiki-data"
    assert shared.path == "${SHARED_NFS_ROOT}"
    assert shared.mode == MountMode.MOUNT
    assert shared.name == "${SHARED_NFS_BUCKET_NAME}"
    assert shared.store == "gcs"
    assert "torch.distributed.run" in spec.run


def test_load_service(sample):
    spec = jobspec.load(sample("service.yaml"))
    assert spec.is_service
    assert spec.replicas == 1
    assert spec.num_nodes == 1
    probe = spec.readiness_probe
    assert probe.path == "/v1/chat/completions"
    assert probe.initial_delay_seconds == 1800
    assert probe.post_data["model"] == "$MODEL_NAME"
    assert probe.post_data["max_tokens"] == 1
    assert spec.resources.ports == (8087,)
    assert spec.resources.cloud == "gcp"
    assert dict(spec.resources.accelerators) == {"T4": 1}
    assert spec.resources.cpus == 7.0
    assert spec.resources.memory == 20.0


def test_file_mount_forms():
    spec = jobspec.loads(
        """\
file_mounts:
  /data: /tmp/data
  /bucket:
    source: gs://my-bucket
  /scratch:
    name: scratch
    store: nfs
    mode: copy
"""
    )
    data, bucket, scratch = spec.file_mounts
    assert data.mode == MountMode.COPY and data.source == "/tmp/data"
    assert bucket.mode == MountMode.MOUNT
    assert scratch.mode == MountMode.COPY
    assert scratch.identifier == "nfs://scratch"


def test_readiness_probe_shorthand():
    spec = jobspec.loads("resources: {ports: 8080}\nservice: {readiness_probe: health}\n")
    assert spec.readiness_probe.path == "/health"
    assert spec.readiness_probe.post_data is None
    assert spec.readiness_probe.initial_delay_seconds == 0


def test_invalid_specs():
    with pytest.raises(ValueError, match="requires 'resources.ports'"):
        jobspec.loads("service: {readiness_probe: /health}\n")
    with pytest.raises(ValueError):
        jobspec.loads("num_nodes: 0\n")
    with pytest.raises(ValueError):
        jobspec.loads("file_mounts: {/data: {source: /tmp, mode: LINK}}\n")
    with pytest.raises(ValueError):
        jobspec.loads("service: {readiness_probe: {path: /, initial_delay_seconds: -1}}\n")
    with pytest.raises(ValueError, match="one of 'source' or 'name'"):
        jobspec.loads("file_mounts: {/data: {mode: MOUNT}}\n")
    with pytest.raises(ValueError):
        jobspec.loads("- a list\n")
    with pytest.raises(ValueError, match="MODEL-NAME"):
        jobspec.loads("envs: {MODEL-NAME: t5, GREETING: hi}\n")
    with pytest.raises(ValueError):
        jobspec.loads("envs: {\"X; touch pwned; Y\": 1}\n")


def test_resource_request():
    request = ResourceRequest.from_dict(
        {"cpus": "4+", "memory": "16GB", "accelerators": "A100-80GB:2", "ports": ["8000-8002", 9000]}
    )
    assert request.cpus == 4.0
    assert request.memory == 16.0
    assert dict(request.accelerators) == {"A100-80GB": 2}
    assert request.accelerator_count == 2
    assert request.ports == (8000, 8001, 8002, 9000)
    assert jobspec.parse_accelerators("T4") == {"T4": 1}
    assert jobspec.parse_accelerators({"L4": None, "T4": 2}) == {"L4": 1, "T4": 2}
    with pytest.raises(ValueError):
        ResourceRequest(cpus=-1)
    with pytest.raises(ValueError):
        ResourceRequest(accelerators={"T4": -1})
    with pytest.raises(ValueError):
        jobspec.parse_ports(70000)
    with pytest.raises(ValueError):
        jobspec.parse_lower_bound("lots", "cpus")


def test_jobspec_is_immutable(sample):
    spec = jobspec.load(sample("service.yaml"))
    with pytest.raises(dataclasses.FrozenInstanceError):
        spec.num_nodes = 4
    with pytest.raises(TypeError):
        spec.envs["MODEL_NAME"] = "other"
    other = spec.with_updates(num_nodes=4)
    assert other.num_nodes == 4
    assert spec.num_nodes == 1
