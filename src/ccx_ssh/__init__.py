# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import cluster_connect

from .provision import SSHProvisioner


@cluster_connect.hookimpl
def cluster_connect_provisioner(config: cluster_connect.Config) -> "SSHProvisioner | None":
    if SSHProvisioner.matches(config.get("provision:backend")):
        return SSHProvisioner(config=config)
    return None
