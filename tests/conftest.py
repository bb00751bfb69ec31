# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import os

import pytest

import cluster_connect.config

data_dir = os.path.join(os.path.dirname(__file__), "data")


@pytest.fixture(autouse=True)
def isolate(tmp_path, monkeypatch):
    """Keep configuration files, cluster state, and buckets inside the test's directory"""
    for key in list(os.environ):
        if key.startswith("CLUSTER_CONNECT_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("CLUSTER_CONNECT_SITE_CONFIG", str(tmp_path / "site.yaml"))
    monkeypatch.setenv("CLUSTER_CONNECT_GLOBAL_CONFIG", str(tmp_path / "global.yaml"))
    monkeypatch.setenv("CLUSTER_CONNECT_STATE_DIR", str(tmp_path / "state"))
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    yield


@pytest.fixture
def config():
    cfg = cluster_connect.config.Config()
    cfg.set("stage:retry_delay", 0, scope="internal")
    cfg.set("storage:staleness_bound", 2, scope="internal")
    cfg.set("probe:interval", 0.1, scope="internal")
    cfg.set("probe:request_timeout", 1, scope="internal")
    return cfg


@pytest.fixture
def sample():
    def _sample(name):
        return os.path.join(data_dir, name)

    return _sample
