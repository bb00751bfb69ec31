# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import importlib.resources
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Any
from typing import Mapping

import yaml

from .error import ProvisionError
from .hookspec import hookimpl
from .jobspec import ResourceRequest
from .logging import get_logger
from .schemas import catalog_schema

if TYPE_CHECKING:
    from .config import Config

logger = get_logger(__name__)


@dataclass(frozen=True)
class MachineType:
    cloud: str
    instance_type: str
    cpus: float
    memory: float
    accelerators: Mapping[str, int] = field(default_factory=dict)
    price: float = 0.0
    regions: tuple[str, ...] = ()

    @property
    def accelerator_count(self) -> int:
        return sum(self.accelerators.values())

    def satisfies(self, request: ResourceRequest) -> bool:
        if request.cloud is not None and request.cloud.lower() != self.cloud.lower():
            return False
        if request.region is not None and self.regions and request.region not in self.regions:
            return False
        if request.cpus is not None and self.cpus < request.cpus:
            return False
        if request.memory is not None and self.memory < request.memory:
            return False
        for name, count in request.accelerators.items():
            if self.accelerators.get(name, 0) < count:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "cloud": self.cloud,
            "instance_type": self.instance_type,
            "cpus": self.cpus,
            "memory": self.memory,
            "accelerators": dict(self.accelerators),
            "price": self.price,
            "regions": list(self.regions),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MachineType":
        return cls(
            cloud=data["cloud"],
            instance_type=data["instance_type"],
            cpus=float(data["cpus"]),
            memory=float(data["memory"]),
            accelerators=dict(data.get("accelerators") or {}),
            price=float(data.get("price", 0.0)),
            regions=tuple(data.get("regions") or ()),
        )


class ResourceResolver:
    """Turn an abstract resource request into the machine types able to satisfy it"""

    def __init__(self, config: "Config | None" = None) -> None:
        if config is None:
            from .config import Config

            config = Config()
        self.config = config

    @property
    def catalog(self) -> list[MachineType]:
        rows: list[dict[str, Any]] = []
        for contribution in self.config.pluginmanager.hook.cluster_connect_machine_catalog():
            rows.extend(contribution or [])
        rows.extend(self.config.get("resources:catalog") or [])
        return [MachineType.from_dict(row) for row in catalog_schema.validate(rows)]

    def resolve(self, request: ResourceRequest) -> list[MachineType]:
        """Return the candidate machine types for ``request``, cheapest first"""
        catalog = self.catalog
        known = {name for machine in catalog for name in machine.accelerators}
        if unknown := [name for name in request.accelerators if name not in known]:
            raise ProvisionError(
                f"invalid accelerator spec: unknown accelerator(s) {', '.join(unknown)}; "
                f"known accelerators are {', '.join(sorted(known))}"
            )
        candidates = [machine for machine in catalog if machine.satisfies(request)]
        if not candidates:
            raise ProvisionError(f"capacity unavailable: no machine type satisfies {request}")
        # cheapest first, then the least over-provisioned
        candidates.sort(key=lambda m: (m.price, m.accelerator_count, m.cpus, m.memory))
        logger.debug(
            f"resolved {len(candidates)} candidate(s): "
            f"{', '.join(f'{m.cloud}/{m.instance_type}' for m in candidates)}"
        )
        return candidates


def load_bundled_catalog() -> list[dict[str, Any]]:
    text = importlib.resources.files("cluster_connect").joinpath("data/catalog.yaml").read_text()
    return yaml.safe_load(text) or []


@hookimpl(specname="cluster_connect_machine_catalog")
def bundled_catalog() -> list[dict[str, Any]]:
    return load_bundled_catalog()
