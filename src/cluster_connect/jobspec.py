# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import enum
import os
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from types import MappingProxyType
from typing import Any
from typing import Mapping

import schema
import yaml

from .schemas import jobspec_schema


class MountMode(enum.Enum):
    COPY = "COPY"
    MOUNT = "MOUNT"


@dataclass(frozen=True)
class ResourceRequest:
    """Lower bounds on what each node of the cluster must provide"""

    cpus: float | None = None
    memory: float | None = None
    accelerators: Mapping[str, int] = field(default_factory=dict)
    cloud: str | None = None
    region: str | None = None
    ports: tuple[int, ...] = ()
    image_id: str | None = None

    def __post_init__(self) -> None:
        if self.cpus is not None and self.cpus < 0:
            raise ValueError(f"cpus must be non-negative ({self.cpus} < 0)")
        if self.memory is not None and self.memory < 0:
            raise ValueError(f"memory must be non-negative ({self.memory} < 0)")
        for name, count in self.accelerators.items():
            if count < 0:
                raise ValueError(f"accelerator count must be non-negative ({name}: {count})")
        object.__setattr__(self, "accelerators", MappingProxyType(dict(self.accelerators)))

    @property
    def accelerator_count(self) -> int:
        return sum(self.accelerators.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpus": self.cpus,
            "memory": self.memory,
            "accelerators": dict(self.accelerators),
            "cloud": self.cloud,
            "region": self.region,
            "ports": list(self.ports),
            "image_id": self.image_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ResourceRequest":
        data = data or {}
        return cls(
            cpus=parse_lower_bound(data.get("cpus"), "cpus"),
            memory=parse_lower_bound(data.get("memory"), "memory"),
            accelerators=parse_accelerators(data.get("accelerators")),
            cloud=data.get("cloud"),
            region=data.get("region"),
            ports=parse_ports(data.get("ports")),
            image_id=data.get("image_id"),
        )


@dataclass(frozen=True)
class MountBinding:
    """A node-side ``path`` backed by a store.  Exactly one of ``source`` (a store URI or
    local path) and ``name`` (a bucket name in ``store``) identifies the backing data."""

    path: str
    mode: MountMode
    source: str | None = None
    name: str | None = None
    store: str | None = None

    def __post_init__(self) -> None:
        if self.source is None and self.name is None:
            raise ValueError(f"file mount {self.path!r}: one of 'source' or 'name' is required")

    @property
    def identifier(self) -> str:
        return self.source or f"{self.store or 'local'}://{self.name}"


@dataclass(frozen=True)
class ReadinessProbe:
    path: str
    post_data: Any = None
    initial_delay_seconds: int = 0

    def __post_init__(self) -> None:
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be non-negative")
        if not self.path.startswith("/"):
            object.__setattr__(self, "path", f"/{self.path}")


@dataclass(frozen=True)
class JobSpec:
    """
    Declarative description of a job: what to provision, what to mount, and what to run on
    every node.  Never mutated after parsing.

    ``envs`` maps variable names to their defaults.  A value of ``None`` declares a variable
    that must be supplied as an override at launch time.
    """

    # ---- identity ----
    name: str

    # ---- resources ----
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    num_nodes: int = 1

    # ---- storage ----
    file_mounts: tuple[MountBinding, ...] = ()

    # ---- environment ----
    envs: Mapping[str, str | None] = field(default_factory=dict)

    # ---- execution ----
    setup: str | None = None
    run: str | None = None

    # ---- service ----
    readiness_probe: ReadinessProbe | None = None
    replicas: int = 1

    def __post_init__(self) -> None:
        if self.num_nodes < 1:
            raise ValueError(f"num_nodes must be at least 1 ({self.num_nodes} < 1)")
        if self.readiness_probe is not None and not self.resources.ports:
            raise ValueError(f"{self.name}: a readiness probe requires 'resources.ports'")
        object.__setattr__(self, "envs", MappingProxyType(dict(self.envs)))
        object.__setattr__(self, "file_mounts", tuple(self.file_mounts))

    @property
    def is_service(self) -> bool:
        return self.readiness_probe is not None

    def with_updates(self, **kwargs) -> "JobSpec":
        return replace(self, **kwargs)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], name: str | None = None) -> "JobSpec":
        data = jobspec_schema.validate(dict(data))
        service = data.get("service") or {}
        probe: ReadinessProbe | None = None
        if p := service.get("readiness_probe"):
            probe = ReadinessProbe(path=p) if isinstance(p, str) else ReadinessProbe(**p)
        envs: dict[str, str | None] = {}
        for var, val in (data.get("envs") or {}).items():
            envs[var] = None if val is None else stringify(val)
        return cls(
            name=data.get("name") or name or "job",
            resources=ResourceRequest.from_dict(data.get("resources")),
            num_nodes=data.get("num_nodes", 1),
            file_mounts=tuple(parse_file_mounts(data.get("file_mounts"))),
            envs=envs,
            setup=data.get("setup"),
            run=data.get("run"),
            readiness_probe=probe,
            replicas=service.get("replicas", 1),
        )


def load(file: str) -> JobSpec:
    """Read a job specification from the yaml ``file``"""
    with open(file) as fh:
        data = yaml.safe_load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{file}: expected a mapping at the top level")
    name = os.path.splitext(os.path.basename(file))[0]
    try:
        return JobSpec.from_dict(data, name=name)
    except schema.SchemaError as e:
        raise ValueError(f"{file}: invalid job specification: {e}") from e


def loads(text: str, name: str | None = None) -> JobSpec:
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("expected a mapping at the top level")
    try:
        return JobSpec.from_dict(data, name=name)
    except schema.SchemaError as e:
        raise ValueError(f"invalid job specification: {e}") from e


def stringify(arg: Any) -> str:
    if isinstance(arg, bool):
        return "true" if arg else "false"
    return str(arg)


def parse_lower_bound(arg: Any, what: str) -> float | None:
    """``8``, ``"8"`` and ``"8+"`` all request at least 8"""
    if arg is None:
        return None
    if isinstance(arg, bool):
        raise ValueError(f"invalid {what} request {arg!r}")
    if isinstance(arg, (int, float)):
        return float(arg)
    text = str(arg).strip().rstrip("+")
    if text.lower().endswith("gb"):
        text = text[:-2]
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"invalid {what} request {arg!r}") from None


def parse_accelerators(arg: str | Mapping[str, int | None] | None) -> dict[str, int]:
    """``"A100-80GB:2"`` -> {"A100-80GB": 2}, ``"T4"`` -> {"T4": 1}"""
    if arg is None:
        return {}
    if isinstance(arg, str):
        name, _, count = arg.partition(":")
        name = name.strip()
        if not name:
            raise ValueError(f"invalid accelerator request {arg!r}")
        try:
            n = int(float(count)) if count.strip() else 1
        except ValueError:
            raise ValueError(f"invalid accelerator count in {arg!r}") from None
        return {name: n}
    return {name: 1 if count is None else int(count) for name, count in arg.items()}


def parse_ports(arg: int | str | list[int | str] | None) -> tuple[int, ...]:
    if arg is None:
        return ()
    items = arg if isinstance(arg, list) else [arg]
    ports: list[int] = []
    for item in items:
        if isinstance(item, int):
            ports.append(item)
            continue
        lo, _, hi = str(item).partition("-")
        try:
            if hi:
                ports.extend(range(int(lo), int(hi) + 1))
            else:
                ports.append(int(lo))
        except ValueError:
            raise ValueError(f"invalid port {item!r}") from None
    for port in ports:
        if not 0 < port < 65536:
            raise ValueError(f"port {port} out of range")
    return tuple(ports)


def parse_file_mounts(arg: Mapping[str, Any] | None) -> list[MountBinding]:
    bindings: list[MountBinding] = []
    for path, value in (arg or {}).items():
        if isinstance(value, str):
            bindings.append(MountBinding(path=path, source=value, mode=MountMode.COPY))
            continue
        mode = MountMode(value.get("mode", "MOUNT"))
        bindings.append(
            MountBinding(
                path=path,
                mode=mode,
                source=value.get("source"),
                name=value.get("name"),
                store=value.get("store"),
            )
        )
    return bindings
