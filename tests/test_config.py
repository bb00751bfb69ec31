# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import pytest
import schema
import yaml

import cluster_connect.config
from cluster_connect.util.time import DurationError
from cluster_connect.util.time import time_in_seconds


def test_config_defaults():
    config = cluster_connect.config.Config()
    assert config.get("provision:backend") == "local"
    assert config.get("provision:max_nodes") == 0
    assert config.get("stage:setup_failure") == "fail"
    assert config.get("storage:staleness_bound") == 2.0
    assert config.get("storage:consistency:gcs") == "strong"
    assert config.get("storage:consistency:s3") == "eventual"
    assert config.get("probe:interval") == 10.0
    assert config.get("probe:timeout") is None
    assert config.get("probe:nonexistent", default=3) == 3


def test_config_set_internal():
    config = cluster_connect.config.Config()
    config.set("probe:interval", "5s", scope="internal")
    assert config.get("probe:interval") == 5.0
    config.set("stage:setup_failure", "retry", scope="internal")
    assert config.get("stage:setup_failure") == "retry"
    value, scope = config.get_highest_priority("stage:setup_failure")
    assert (value, scope) == ("retry", "internal")
    config.set("provision:ssh:hosts", "a, b,c", scope="internal")
    assert config.get("provision:ssh:hosts") == ["a", "b", "c"]
    # siblings of a nested key are kept
    assert config.get("provision:ssh:workdir") == ".cluster_connect"


def test_config_invalid_values():
    config = cluster_connect.config.Config()
    with pytest.raises(schema.SchemaError):
        config.set("stage:setup_failure", "maybe", scope="internal")
    with pytest.raises(schema.SchemaError):
        config.set("probe:interval", 0, scope="internal")
    with pytest.raises(ValueError):
        config.set("probe:interval", 1, scope="defaults")
    with pytest.raises(ValueError):
        config.set("probe:interval", 1, scope="bogus")


def test_config_envar(monkeypatch):
    monkeypatch.setenv("CLUSTER_CONNECT_PROBE_INTERVAL", "3")
    monkeypatch.setenv("CLUSTER_CONNECT_PROVISION_MAX_NODES", "8")
    monkeypatch.setenv("CLUSTER_CONNECT_STORAGE_CONSISTENCY", "s3:strong")
    monkeypatch.setenv("CLUSTER_CONNECT_STAGE_SKIP_COMPLETED_SETUP", "off")
    config = cluster_connect.config.Config()
    assert config.get("probe:interval") == 3.0
    assert config.get("provision:max_nodes") == 8
    assert config.get("storage:consistency:s3") == "strong"
    assert config.get("storage:consistency:gcs") == "strong"
    assert config.get("stage:skip_completed_setup") is False
    _, scope = config.get_highest_priority("probe:interval")
    assert scope == "environment"


def test_config_local_file(tmp_path):
    with open("cluster_connect.yaml", "w") as fh:
        yaml.dump({"cluster_connect": {"stage": {"setup_failure": "retry", "setup_retries": 3}}}, fh)
    config = cluster_connect.config.Config()
    assert config.get("stage:setup_failure") == "retry"
    assert config.get("stage:setup_retries") == 3
    config.set("stage:log_tail", 10, scope="local")
    with open("cluster_connect.yaml") as fh:
        data = yaml.safe_load(fh)
    assert data["cluster_connect"]["stage"]["log_tail"] == 10


def test_config_unknown_section():
    with open("cluster_connect.yaml", "w") as fh:
        yaml.dump({"cluster_connect": {"launch": {"exec": "srun"}}}, fh)
    with pytest.raises(ValueError, match="unknown configuration section"):
        cluster_connect.config.Config()


def test_config_paths(tmp_path):
    config = cluster_connect.config.Config()
    assert config.state_dir == str(tmp_path / "state")
    assert config.storage_root == str(tmp_path / "state" / "buckets")
    config.set("storage:root", str(tmp_path / "buckets"), scope="internal")
    assert config.storage_root == str(tmp_path / "buckets")


@pytest.mark.parametrize(
    "arg,expected",
    [(5, 5.0), ("2.5", 2.5), ("1m30s", 90.0), ("500ms", 0.5), ("01:00:02", 3602.0), ("2:30", 150.0)],
)
def test_durations(arg, expected):
    assert time_in_seconds(arg) == pytest.approx(expected)


@pytest.mark.parametrize("arg", ["", "fast", "10 s", "5x", "s10"])
def test_invalid_durations(arg):
    with pytest.raises(DurationError):
        time_in_seconds(arg)
