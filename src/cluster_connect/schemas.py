# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import logging
import shlex
import typing

from schema import And
from schema import Optional
from schema import Or
from schema import Regex
from schema import Schema
from schema import Use

from .util.time import time_in_seconds

logger = logging.getLogger(__name__)


def flag_splitter(arg: list[str] | str) -> list[str]:
    if isinstance(arg, str):
        return shlex.split(arg)
    elif not isinstance(arg, list) or not all(isinstance(_, str) for _ in arg):
        raise ValueError("expected list[str]")
    return arg


def list_of_str(arg: typing.Any) -> bool:
    return isinstance(arg, list) and all([isinstance(_, str) for _ in arg])


def str_list(arg: str | list[str]) -> list[str]:
    if isinstance(arg, str):
        return [_.strip() for _ in arg.split(",") if _.split()]
    return arg


class choose_from:
    def __init__(self, *choices: str | None):
        self.choices = set(choices)

    def __call__(self, arg: str | None) -> str | None:
        if arg not in self.choices:
            raise ValueError(f"Invalid choice {arg!r}, choose from {self.choices!r}")
        return arg


def boolean(arg: typing.Any) -> bool:
    if isinstance(arg, str):
        return arg.lower() not in ("0", "off", "false", "no")
    return bool(arg)


def non_negative(arg: typing.Any) -> float:
    value = time_in_seconds(arg)
    if value < 0:
        raise ValueError(f"expected a non-negative duration, got {arg!r}")
    return value


def load_consistency(arg: str | dict) -> dict[str, str]:
    """``gcs:strong,s3:eventual`` -> {"gcs": "strong", "s3": "eventual"}"""
    if isinstance(arg, dict):
        return arg
    mapping: dict[str, str] = {}
    for kv in arg.split(","):
        k, v = [_.strip() for _ in kv.split(":") if _.split()]
        mapping[k] = v
    return mapping


consistency_level = Use(choose_from("strong", "eventual"))

machine_type_spec = {
    "cloud": str,
    "instance_type": str,
    "cpus": Or(int, float),
    "memory": Or(int, float),
    Optional("accelerators"): Or({str: int}, None),
    Optional("price"): Or(int, float),
    Optional("regions"): Or([str], None),
}
catalog_schema = Schema([machine_type_spec])

config_schema = Schema(
    {
        Optional("debug"): Use(boolean),
        Optional("plugins"): list_of_str,
        Optional("state_dir"): Or(str, None),
    }
)
provision_schema = Schema(
    {
        Optional("backend"): Or(str, None),
        Optional("max_nodes"): And(Use(int), lambda n: n >= 0),
        Optional("workdir"): Or(str, None),
        Optional("ssh"): {
            Optional("hosts"): Use(str_list),
            Optional("user"): Or(str, None),
            Optional("options"): Use(flag_splitter),
            Optional("workdir"): str,
        },
    }
)
resources_schema = Schema({Optional("catalog"): Or([machine_type_spec], None)})
storage_schema = Schema(
    {
        Optional("root"): Or(str, None),
        Optional("staleness_bound"): Use(non_negative),
        Optional("consistency"): And(Use(load_consistency), {str: consistency_level}),
    }
)
stage_schema = Schema(
    {
        Optional("setup_failure"): Use(choose_from("fail", "retry")),
        Optional("setup_retries"): And(Use(int), lambda n: n >= 0),
        Optional("retry_delay"): Use(non_negative),
        Optional("skip_completed_setup"): Use(boolean),
        Optional("log_tail"): And(Use(int), lambda n: n > 0),
    }
)
probe_schema = Schema(
    {
        Optional("interval"): And(Use(non_negative), lambda x: x > 0),
        Optional("timeout"): Or(None, Use(non_negative)),
        Optional("timeout_factor"): And(Use(float), lambda x: x >= 1.0),
        Optional("request_timeout"): And(Use(non_negative), lambda x: x > 0),
        Optional("host"): Or(str, None),
    }
)


class EnvarSchema(Schema):
    prefix = "CLUSTER_CONNECT_"
    sections = ("provision_", "resources_", "storage_", "stage_", "probe_")

    def validate(self, data, is_root_eval=True):
        data = super().validate(data, is_root_eval=False)
        if is_root_eval:
            final: dict[str, dict] = {}
            for key, value in data.items():
                name = key[len(self.prefix) :].lower()
                if name.startswith(self.sections):
                    section, _, field = name.partition("_")
                    final.setdefault(section, {})[field] = value
                else:
                    final.setdefault("config", {})[name] = value
            return final
        return data


environment_variable_schema = EnvarSchema(
    {
        Optional("CLUSTER_CONNECT_DEBUG"): Use(boolean),
        Optional("CLUSTER_CONNECT_PLUGINS"): Use(str_list),
        Optional("CLUSTER_CONNECT_STATE_DIR"): Use(str),
        Optional("CLUSTER_CONNECT_PROVISION_BACKEND"): Use(str),
        Optional("CLUSTER_CONNECT_PROVISION_MAX_NODES"): Use(int),
        Optional("CLUSTER_CONNECT_PROVISION_WORKDIR"): Use(str),
        Optional("CLUSTER_CONNECT_STORAGE_ROOT"): Use(str),
        Optional("CLUSTER_CONNECT_STORAGE_STALENESS_BOUND"): Use(non_negative),
        Optional("CLUSTER_CONNECT_STORAGE_CONSISTENCY"): Use(load_consistency),
        Optional("CLUSTER_CONNECT_STAGE_SETUP_FAILURE"): Use(str),
        Optional("CLUSTER_CONNECT_STAGE_SETUP_RETRIES"): Use(int),
        Optional("CLUSTER_CONNECT_STAGE_RETRY_DELAY"): Use(non_negative),
        Optional("CLUSTER_CONNECT_STAGE_SKIP_COMPLETED_SETUP"): Use(boolean),
        Optional("CLUSTER_CONNECT_PROBE_INTERVAL"): Use(non_negative),
        Optional("CLUSTER_CONNECT_PROBE_TIMEOUT"): Use(non_negative),
        Optional("CLUSTER_CONNECT_PROBE_TIMEOUT_FACTOR"): Use(float),
        Optional("CLUSTER_CONNECT_PROBE_HOST"): Use(str),
    },
    ignore_extra_keys=True,
)


# Job specifications have the following form:
#
# name: my-job
# num_nodes: 2
# resources:
#   cpus: 8+
#   memory: 64+
#   accelerators: A100-80GB:1
#   cloud: gcp
#   ports: 8087
# envs:
#   MODEL_NAME: my-model
#   BUCKET:             # declared, must be supplied at launch
# file_mounts:
#   /data: gs://bucket   # COPY
#   /shared:
#     name: ${BUCKET}
#     store: gcs
#     mode: MOUNT
# setup: |
#   ...
# run: |
#   ...
# service:
#   readiness_probe:
#     path: /health
#     post_data: {...}
#     initial_delay_seconds: 60
#   replicas: 1

scalar = Or(str, int, float, bool)

# names the shell can export
variable_name_pattern = r"^[A-Za-z_][A-Za-z0-9_]*\Z"
variable_name = And(str, Regex(variable_name_pattern))

mount_mode = And(Use(lambda x: str(x).upper()), lambda x: x in ("COPY", "MOUNT"))

resources_spec = {
    Optional("cpus"): Or(None, scalar),
    Optional("memory"): Or(None, scalar),
    Optional("accelerators"): Or(None, str, {str: Or(int, None)}),
    Optional("cloud"): Or(None, str),
    Optional("region"): Or(None, str),
    Optional("ports"): Or(None, int, str, [Or(int, str)]),
    Optional("image_id"): Or(None, str),
    Optional(str): object,
}
file_mount_spec = Or(
    str,
    {
        Optional("source"): str,
        Optional("name"): Or(str, None),
        Optional("store"): str,
        Optional("mode"): mount_mode,
        Optional("persistent"): bool,
    },
)
readiness_probe_spec = Or(
    str,
    {
        "path": str,
        Optional("post_data"): object,
        Optional("initial_delay_seconds"): And(int, lambda n: n >= 0),
    },
)
jobspec_schema = Schema(
    {
        Optional("name"): Or(None, str),
        Optional("resources"): Or(None, resources_spec),
        Optional("num_nodes"): And(int, lambda n: n >= 1),
        Optional("envs"): Or(None, {variable_name: Or(None, scalar)}),
        Optional("file_mounts"): Or(None, {str: file_mount_spec}),
        Optional("setup"): Or(None, str),
        Optional("run"): Or(None, str),
        Optional("service"): Or(
            None,
            {
                Optional("readiness_probe"): readiness_probe_spec,
                Optional("replicas"): And(int, lambda n: n >= 1),
            },
        ),
    }
)
