# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
"""
Environment materialization
---------------------------

Each node runs its stages with an environment built in three layers, lowest precedence first:

1. ``envs`` from the job specification;
2. variables injected by the launcher (``CCX_NODE_RANK``, ``CCX_NODE_IPS``, ...);
3. overrides supplied at launch time.

A variable declared in ``envs`` without a value must be overridden before it can be used.
Referencing such a variable, in a stage script, a file mount, or the readiness probe's
payload, is an error detected before any infrastructure is touched.  An unbound variable is
never replaced by the empty string.
"""
import re
from typing import TYPE_CHECKING
from typing import Any
from typing import Iterator
from typing import Mapping

from .cluster import ClusterHandle
from .error import UnboundVariableError
from .jobspec import JobSpec
from .jobspec import MountBinding
from .jobspec import stringify
from .schemas import variable_name_pattern

if TYPE_CHECKING:
    from .storage import BoundMount

variable_name = re.compile(variable_name_pattern)
variable_pattern = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")

injected_variables = (
    "CCX_NODE_RANK",
    "CCX_NODE_IPS",
    "CCX_NUM_NODES",
    "CCX_NUM_GPUS_PER_NODE",
    "CCX_CLUSTER_NAME",
    "CCX_HEAD_IP",
)


class EnvironmentFrame(Mapping[str, str]):
    """The variables of one node.  Read only"""

    def __init__(self, rank: int, variables: Mapping[str, str]) -> None:
        self.rank = rank
        self._data = dict(variables)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"EnvironmentFrame(rank={self.rank}, {self._data!r})"

    def to_dict(self) -> dict[str, str]:
        return dict(self._data)


def referenced_variables(text: str | None) -> set[str]:
    if not text:
        return set()
    return {braced or bare for braced, bare in variable_pattern.findall(text)}


def referenced_in_data(data: Any) -> set[str]:
    if isinstance(data, str):
        return referenced_variables(data)
    elif isinstance(data, Mapping):
        names: set[str] = set()
        for key, value in data.items():
            names |= referenced_in_data(key) | referenced_in_data(value)
        return names
    elif isinstance(data, (list, tuple)):
        return set().union(*[referenced_in_data(_) for _ in data]) if data else set()
    return set()


def expand(text: str, variables: Mapping[str, str], strict: bool = True) -> str:
    """Substitute ``$X`` and ``${X}`` in ``text``.  References to names missing from
    ``variables`` raise UnboundVariableError if ``strict``, otherwise they are left alone"""
    missing: set[str] = set()

    def repl(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name in variables:
            return variables[name]
        missing.add(name)
        return match.group(0)

    expanded = variable_pattern.sub(repl, text)
    if missing and strict:
        raise UnboundVariableError(missing)
    return expanded


def expand_data(data: Any, variables: Mapping[str, str], strict: bool = True) -> Any:
    """Like ``expand``, but walks the strings of nested lists and mappings"""
    if isinstance(data, str):
        return expand(data, variables, strict=strict)
    elif isinstance(data, Mapping):
        return {
            expand_data(k, variables, strict): expand_data(v, variables, strict)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [expand_data(_, variables, strict) for _ in data]
    return data


def bound_variables(spec: JobSpec, overrides: Mapping[str, Any] | None = None) -> dict[str, str]:
    """Variables from ``envs`` and ``overrides`` that have a value"""
    variables = {key: value for key, value in spec.envs.items() if value is not None}
    for key, value in (overrides or {}).items():
        if value is not None:
            variables[key] = stringify(value)
    return variables


def unset_variables(spec: JobSpec, overrides: Mapping[str, Any] | None = None) -> set[str]:
    """Variables declared in ``envs`` without a value and not overridden"""
    bound = bound_variables(spec, overrides)
    return {key for key, value in spec.envs.items() if value is None and key not in bound}


def check_names(spec: JobSpec, overrides: Mapping[str, Any] | None = None) -> None:
    """Raise ValueError for variable names the shell cannot export"""
    invalid = [
        name
        for name in [*spec.envs, *(overrides or {})]
        if not isinstance(name, str) or not variable_name.match(name)
    ]
    if invalid:
        names = ", ".join(sorted({repr(name) for name in invalid}))
        raise ValueError(f"{spec.name}: invalid environment variable name(s): {names}")


def check_unbound(spec: JobSpec, overrides: Mapping[str, Any] | None = None) -> None:
    """Raise UnboundVariableError if anything the job runs references a variable that has no
    value.  Called before provisioning so a misconfigured job never allocates nodes"""
    check_names(spec, overrides)
    unset = unset_variables(spec, overrides)
    bound = bound_variables(spec, overrides)
    unbound: dict[str, set[str]] = {}

    # scripts are expanded by the shell; other environment variables are legitimate there
    for stage in ("setup", "run"):
        if names := referenced_variables(getattr(spec, stage)) & unset:
            unbound[stage] = names

    # file mounts and the probe payload are expanded here, so every reference must resolve
    mount_refs: set[str] = set()
    for binding in spec.file_mounts:
        for text in (binding.path, binding.source, binding.name):
            mount_refs |= referenced_variables(text)
    if names := {name for name in mount_refs if name not in bound}:
        unbound["file_mounts"] = names
    if spec.readiness_probe is not None:
        refs = referenced_in_data(spec.readiness_probe.post_data)
        if names := {n for n in refs if n not in bound and n not in injected_variables}:
            unbound["readiness_probe"] = names

    if unbound:
        names = set().union(*unbound.values())
        raise UnboundVariableError(names, where=", ".join(unbound))


def resolve_mounts(
    spec: JobSpec, overrides: Mapping[str, Any] | None = None
) -> tuple[MountBinding, ...]:
    """The job's file mounts with variable references in paths, sources, and bucket names
    expanded"""
    variables = bound_variables(spec, overrides)
    resolved: list[MountBinding] = []
    for binding in spec.file_mounts:
        try:
            resolved.append(
                MountBinding(
                    path=expand(binding.path, variables),
                    mode=binding.mode,
                    source=None if binding.source is None else expand(binding.source, variables),
                    name=None if binding.name is None else expand(binding.name, variables),
                    store=binding.store,
                )
            )
        except UnboundVariableError as e:
            raise UnboundVariableError(e.names, where=f"file mount {binding.path}") from None
    return tuple(resolved)


def runtime_variables(cluster: ClusterHandle, rank: int) -> dict[str, str]:
    node = cluster.node(rank)
    return {
        "CCX_NODE_RANK": str(node.rank),
        "CCX_NODE_IPS": "\n".join(cluster.ips),
        "CCX_NUM_NODES": str(len(cluster)),
        "CCX_NUM_GPUS_PER_NODE": str(cluster.accelerators_per_node),
        "CCX_CLUSTER_NAME": cluster.name,
        "CCX_HEAD_IP": cluster.head.ip,
    }


def materialize(
    spec: JobSpec,
    cluster: ClusterHandle,
    rank: int,
    overrides: Mapping[str, Any] | None = None,
    mounts: "list[BoundMount] | None" = None,
) -> EnvironmentFrame:
    """Build the environment of node ``rank``.

    A variable whose value names the node-side path of one of ``mounts`` is rewritten to where
    that mount was realized on the node, so scripts reach shared storage through the mount
    handle rather than through a path that only exists on some backends.
    """
    check_unbound(spec, overrides)
    variables = {key: value for key, value in spec.envs.items() if value is not None}
    variables.update(runtime_variables(cluster, rank))
    for key, value in (overrides or {}).items():
        if value is not None:
            variables[key] = stringify(value)
    for bound in mounts or []:
        if rank >= len(bound.node_paths):
            continue
        for key, value in variables.items():
            if value == bound.binding.path:
                variables[key] = bound.node_paths[rank]
    return EnvironmentFrame(rank, variables)
