# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import os

from . import config
from . import jobspec
from .cluster import ClusterHandle
from .cluster import NodeHandle
from .cluster import NodeStatus
from .config import Config
from .config import ConfigScope
from .environment import EnvironmentFrame
from .environment import materialize
from .error import ClusterConnectError
from .error import MountError
from .error import ProbeTimeoutError
from .error import ProvisionError
from .error import ScriptExitError
from .error import UnboundVariableError
from .hookspec import hookimpl
from .job import Job
from .job import JobResult
from .job import JobStatus
from .job import launch
from .jobspec import JobSpec
from .jobspec import MountBinding
from .jobspec import MountMode
from .jobspec import ReadinessProbe
from .jobspec import ResourceRequest
from .logging import get_logger
from .probe import ProbeResult
from .probe import ProbeStatus
from .probe import ReadinessProber
from .provision import NodeConnection
from .provision import Provisioner
from .provision import factory as get_provisioner
from .resources import MachineType
from .resources import ResourceResolver
from .stage import NodeExecutor
from .stage import NodeState
from .storage import BoundMount
from .storage import StorageBinder

__all__ = [
    "hookimpl",
    "config",
    "jobspec",
    "Config",
    "ConfigScope",
    "ClusterHandle",
    "NodeHandle",
    "NodeStatus",
    "EnvironmentFrame",
    "materialize",
    "ClusterConnectError",
    "MountError",
    "ProbeTimeoutError",
    "ProvisionError",
    "ScriptExitError",
    "UnboundVariableError",
    "Job",
    "JobResult",
    "JobStatus",
    "launch",
    "JobSpec",
    "MountBinding",
    "MountMode",
    "ReadinessProbe",
    "ResourceRequest",
    "get_logger",
    "ProbeResult",
    "ProbeStatus",
    "ReadinessProber",
    "NodeConnection",
    "Provisioner",
    "get_provisioner",
    "MachineType",
    "ResourceResolver",
    "NodeExecutor",
    "NodeState",
    "BoundMount",
    "StorageBinder",
]


def _initial_logging_setup(*, _ini_setup=[False]):
    from . import logging

    if _ini_setup[0]:
        return
    logging.configure_logging()
    if levelname := os.getenv("CLUSTER_CONNECT_LOG_LEVEL"):
        logging.set_logging_level(levelname)
    else:
        logging.set_logging_level("INFO")
    if os.getenv("CLUSTER_CONNECT_DEBUG", "no").lower() in ("yes", "true", "1", "on"):
        logging.set_logging_level("DEBUG")
    _ini_setup[0] = True


_initial_logging_setup()
