# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
from typing import TYPE_CHECKING
from typing import Any

import pluggy

if TYPE_CHECKING:
    from .config import Config
    from .provision import Provisioner

project_name = "cluster_connect"

hookspec = pluggy.HookspecMarker(project_name)
hookimpl = pluggy.HookimplMarker(project_name)


@hookspec(firstresult=True)
def cluster_connect_provisioner(config: "Config") -> "Provisioner":
    """Return the provisioner for ``config``'s ``provision:backend``, or None"""
    raise NotImplementedError


@hookspec
def cluster_connect_machine_catalog() -> list[dict[str, Any]]:
    """Rows to add to the machine-type catalog consulted by the resource resolver"""
    raise NotImplementedError
