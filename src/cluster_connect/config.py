# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import logging
import os
import sys
from collections.abc import ValuesView
from typing import Any

import schema
import yaml

from .logging import set_logging_level
from .pluginmanager import ClusterConnectPluginManager
from .schemas import config_schema
from .schemas import environment_variable_schema
from .schemas import probe_schema
from .schemas import provision_schema
from .schemas import resources_schema
from .schemas import stage_schema
from .schemas import storage_schema
from .util import collections

logger = logging.getLogger("cluster_connect.config")

section_schemas: dict[str, schema.Schema] = {
    "config": config_schema,
    "provision": provision_schema,
    "resources": resources_schema,
    "storage": storage_schema,
    "stage": stage_schema,
    "probe": probe_schema,
}


class ConfigScope:
    def __init__(self, name: str, file: str | None, data: dict[str, Any]) -> None:
        self.name = name
        self.file = file
        self.data: dict[str, Any] = {}
        for section, section_data in data.items():
            if section not in section_schemas:
                where = file or name
                raise ValueError(f"{where}: unknown configuration section {section!r}")
            self.data[section] = section_schemas[section].validate(section_data)

    def __repr__(self):
        file = self.file or "<none>"
        return f"ConfigScope({self.name}: {file})"

    def __eq__(self, other):
        if not isinstance(other, ConfigScope):
            return False
        return self.name == other.name and self.file == other.file and other.data == self.data

    def __iter__(self):
        return iter(self.data)

    def __contains__(self, section: str) -> bool:
        return section in self.data

    def get_section(self, section: str) -> Any:
        return self.data.get(section)

    def dump(self) -> None:
        if self.file is None:
            return
        with open(self.file, "w") as fh:
            yaml.dump({"cluster_connect": self.data}, fh, default_flow_style=False)


class Config:
    def __init__(self) -> None:
        self.pluginmanager: ClusterConnectPluginManager = ClusterConnectPluginManager()
        defaults = {
            "config": {
                "debug": False,
                "plugins": [],
                "state_dir": None,
            },
            "provision": {
                "backend": "local",
                "max_nodes": 0,
                "workdir": None,
                "ssh": {"hosts": [], "user": None, "options": [], "workdir": ".cluster_connect"},
            },
            "resources": {
                "catalog": [],
            },
            "storage": {
                "root": None,
                "staleness_bound": 2.0,
                "consistency": {
                    "local": "strong",
                    "file": "strong",
                    "nfs": "strong",
                    "gcs": "strong",
                    "s3": "eventual",
                    "r2": "eventual",
                },
            },
            "stage": {
                "setup_failure": "fail",
                "setup_retries": 1,
                "retry_delay": 5.0,
                "skip_completed_setup": True,
                "log_tail": 50,
            },
            "probe": {
                "interval": 10.0,
                "timeout": None,
                "timeout_factor": 2.0,
                "request_timeout": 10.0,
                "host": None,
            },
        }
        self.scopes: dict[str, ConfigScope] = {}
        default_scope = ConfigScope("defaults", None, defaults)
        self.push_scope(default_scope)
        for scope in ("site", "global", "local"):
            config_scope = read_config_scope(scope)
            self.push_scope(config_scope)
        if cscope := read_env_config():
            self.push_scope(cscope)
        if self.get("config:debug"):
            set_logging_level("debug")

    def read_only_scope(self, scope: str) -> bool:
        return scope in ("defaults", "environment")

    def push_scope(self, scope: ConfigScope) -> None:
        self.scopes[scope.name] = scope
        if cfg := scope.get_section("config"):
            if plugins := cfg.get("plugins"):
                for f in plugins:
                    self.pluginmanager.consider_plugin(f)

    def get_config(self, section: str, scope: str | None = None) -> Any:
        scopes: ValuesView[ConfigScope] | list[ConfigScope]
        if scope is None:
            scopes = self.scopes.values()
        else:
            scopes = [self.validate_scope(scope)]
        merged_section: dict[str, Any] = {}
        for config_scope in scopes:
            data = config_scope.get_section(section)
            if not data or not isinstance(data, dict):
                continue
            merged_section = collections.merge(merged_section, {section: data})
        if section not in merged_section:
            return {}
        return merged_section[section]

    def get(self, path: str, default: Any = None, scope: str | None = None) -> Any:
        parts = process_config_path(path)
        section = parts.pop(0)
        value = self.get_config(section, scope=scope)
        while parts:
            key = parts.pop(0)
            # cannot use value.get(key, default) in case there is another part
            # and default is not a dict
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def get_highest_priority(self, path: str, default: Any = None) -> tuple[Any, str]:
        sentinel = object()
        for scope in reversed(self.scopes.keys()):
            value = self.get(path, default=sentinel, scope=scope)
            if value is not sentinel:
                return value, scope
        return default, "none"

    def set(self, path: str, value: Any, scope: str | None = None) -> None:
        parts = process_config_path(path)
        section = parts.pop(0)
        config_scope = self.validate_scope(scope)
        if self.read_only_scope(config_scope.name):
            raise ValueError(f"Cannot modify read only scope {config_scope.name!r}")
        section_data = dict(config_scope.get_section(section) or {})
        data = section_data
        while len(parts) > 1:
            key = parts.pop(0)
            new = data.get(key, {})
            if isinstance(new, dict):
                new = dict(new)
                # reattach to parent object
                data[key] = new
            data = new
        # update new value
        data[parts[0]] = value
        self.update_config(section, section_data, scope=config_scope.name)

    def highest_precedence_scope(self) -> ConfigScope:
        """Non-internal scope with highest precedence."""
        file_scopes = [scope for scope in self.scopes.values() if scope.file is not None]
        return next(reversed(file_scopes))

    def validate_scope(self, scope: str | None) -> ConfigScope:
        if scope is None:
            return self.highest_precedence_scope()
        elif scope in self.scopes:
            return self.scopes[scope]
        elif scope == "internal":
            self.scopes["internal"] = ConfigScope("internal", None, {})
            return self.scopes["internal"]
        else:
            raise ValueError(f"Invalid scope {scope!r}")

    def update_config(self, section: str, update_data: dict[str, Any], scope: str | None = None):
        """Update the configuration file for a particular scope.

        Args:
            section (str): section of the configuration to be updated
            update_data (dict): data to be used for the update
            scope (str): scope to be updated
        """
        if scope is None:
            config_scope = self.highest_precedence_scope()
        else:
            config_scope = self.scopes[scope]
        config_scope.data[section] = section_schemas[section].validate(dict(update_data))
        config_scope.dump()

    @property
    def state_dir(self) -> str:
        if path := self.get("config:state_dir"):
            return os.path.abspath(os.path.expanduser(path))
        return os.path.expanduser("~/.cluster_connect")

    @property
    def storage_root(self) -> str:
        if path := self.get("storage:root"):
            return os.path.abspath(os.path.expanduser(path))
        return os.path.join(self.state_dir, "buckets")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.state_dir, "logs")


def read_config_scope(scope: str) -> ConfigScope:
    data: dict[str, Any] = {}
    file = get_scope_filename(scope)
    if fd := read_config_file(file):
        if "cluster_connect" not in fd:
            raise KeyError(f"{file}: missing key 'cluster_connect'")
        data.update(fd["cluster_connect"] or {})
    return ConfigScope(scope, file, data)


def get_scope_filename(scope: str) -> str:
    if scope == "site":
        if var := os.getenv("CLUSTER_CONNECT_SITE_CONFIG"):
            return var
        return os.path.join(sys.prefix, "etc/cluster_connect/config.yaml")
    elif scope == "global":
        if var := os.getenv("CLUSTER_CONNECT_GLOBAL_CONFIG"):
            return var
        elif var := os.getenv("XDG_CONFIG_HOME"):
            file = os.path.join(var, "cluster_connect/config.yaml")
            if os.path.exists(file):
                return file
        return os.path.expanduser("~/.config/cluster_connect.yaml")
    elif scope == "local":
        return os.path.abspath("./cluster_connect.yaml")
    raise ValueError(f"Could not determine filename for scope {scope!r}")


def read_env_config() -> ConfigScope | None:
    prefix = environment_variable_schema.prefix
    variables = {key: var for key, var in os.environ.items() if key.startswith(prefix)}
    if not variables:
        return None
    data = environment_variable_schema.validate(variables)
    if not data:
        return None
    return ConfigScope("environment", None, data)


def read_config_file(file: str) -> dict[str, Any] | None:
    """Load configuration settings from ``file``"""
    if not os.path.exists(file):
        return None
    with open(file) as fh:
        return yaml.safe_load(fh)


def process_config_path(path: str) -> list[str]:
    result: list[str] = []
    if path.startswith(":"):
        raise ValueError(f"Illegal leading ':' in path {path}")
    while path:
        front, _, path = path.partition(":")
        result.append(front)
        if path.startswith(("{", "[")):
            result.append(path)
            return result
    return result
