# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import subprocess

import pytest

import ccx_ssh
import ccx_ssh.provision
from ccx_ssh.provision import RemoteCommandError
from ccx_ssh.provision import SSHConnection
from ccx_ssh.provision import SSHProvisioner
from cluster_connect.cluster import NodeHandle
from cluster_connect.error import ProvisionError
from cluster_connect.jobspec import ResourceRequest


class FakeRun:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    def __call__(self, args, input=None, **kwargs):
        self.calls.append((list(args), input))
        return subprocess.CompletedProcess(args, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def fake_run(monkeypatch):
    run = FakeRun()
    monkeypatch.setattr(ccx_ssh.provision.subprocess, "run", run)
    return run


@pytest.fixture
def node():
    return NodeHandle(rank=1, ip="10.0.0.2", root=".cluster_connect/train", host="node02")


def test_connection_commands(fake_run, node):
    conn = SSHConnection(node, ssh="ssh", user="me", options=["-o", "BatchMode=yes"])
    assert conn.prefix == ["ssh", "-o", "BatchMode=yes", "me@node02"]
    assert conn.realize("/data") == "/data"
    assert conn.realize("out/../logs") == ".cluster_connect/train/logs"
    conn.write_text("marker", "abc")
    args, input = fake_run.calls[-1]
    assert args[:-1] == conn.prefix
    assert args[-1] == "mkdir -p .cluster_connect/train && cat > .cluster_connect/train/marker"
    assert input == "abc"
    conn.link("/shared/buckets/gcs/b", "/shared dir")
    args, _ = fake_run.calls[-1]
    assert args[-1].endswith("ln -sfn /shared/buckets/gcs/b '/shared dir'")


def test_connection_errors(fake_run, node):
    conn = SSHConnection(node)
    fake_run.returncode = 1
    assert not conn.exists("x")
    assert conn.read_text("x") is None
    with pytest.raises(RemoteCommandError):
        conn.remove("x")
    fake_run.returncode, fake_run.stderr = 255, "Connection refused"
    with pytest.raises(RemoteCommandError, match="Connection refused"):
        conn.exists("x")


def test_connection_requires_host():
    with pytest.raises(ValueError):
        SSHConnection(NodeHandle(rank=0, ip="10.0.0.1", root="x"))


def test_plugin_selects_backend(config, monkeypatch):
    monkeypatch.setattr(ccx_ssh.provision.shutil, "which", lambda name: f"/usr/bin/{name}")
    assert ccx_ssh.cluster_connect_provisioner(config) is None
    config.set("provision:backend", "ssh", scope="internal")
    assert isinstance(ccx_ssh.cluster_connect_provisioner(config), SSHProvisioner)


def test_provision_hosts(config, fake_run, monkeypatch):
    monkeypatch.setattr(ccx_ssh.provision.shutil, "which", lambda name: f"/usr/bin/{name}")
    ips = {"node01": "10.0.0.1", "node02": "10.0.0.2", "node03": "10.0.0.3"}
    monkeypatch.setattr(ccx_ssh.provision.socket, "gethostbyname", lambda host: ips[host])
    config.set("provision:backend", "ssh", scope="internal")
    config.set("provision:ssh:hosts", list(ips), scope="internal")
    provisioner = SSHProvisioner(config=config)
    cluster = provisioner.provision("train", ResourceRequest(), 2)
    assert cluster.backend == "ssh"
    assert [node.host for node in cluster.nodes] == ["node01", "node02"]
    assert cluster.ips == ["10.0.0.1", "10.0.0.2"]
    assert fake_run.calls[0][0][-1] == "mkdir -p .cluster_connect/train"
    # hosts held by one cluster are not handed to another
    other = provisioner.provision("eval", ResourceRequest(), 1)
    assert other.head.host == "node03"
    with pytest.raises(ProvisionError, match="free"):
        provisioner.provision("more", ResourceRequest(), 1)
    provisioner.terminate("train")
    assert fake_run.calls[-1][0][-1] == "rm -rf .cluster_connect/train"
    assert provisioner.provision("more", ResourceRequest(), 1).head.host == "node01"
