# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
from typing import TYPE_CHECKING
from typing import Iterable

if TYPE_CHECKING:
    from .probe import ProbeResult


class ClusterConnectError(Exception):
    pass


class ProvisionError(ClusterConnectError):
    """Infrastructure could not be allocated: no capacity, quota exceeded, or an invalid
    accelerator request"""


class MountError(ClusterConnectError):
    """A file mount could not be established on every node"""


class UnboundVariableError(ClusterConnectError):
    def __init__(self, names: Iterable[str], where: str | None = None) -> None:
        self.names = sorted(set(names))
        msg = "unbound variable{}: {}".format(
            "s" if len(self.names) > 1 else "", ", ".join(self.names)
        )
        if where:
            msg += f" (referenced in {where})"
        msg += ".  Provide a value in 'envs' or as an override"
        super().__init__(msg)


class ScriptExitError(ClusterConnectError):
    def __init__(self, rank: int, stage: str, returncode: int, stderr: str = "") -> None:
        self.rank = rank
        self.stage = stage
        self.returncode = returncode
        self.stderr = stderr
        msg = f"{stage} stage on rank {rank} exited with status {returncode}"
        if stderr:
            msg += f"\n{stderr}"
        super().__init__(msg)


class ProbeTimeoutError(ClusterConnectError):
    def __init__(self, rank: int, result: "ProbeResult") -> None:
        self.rank = rank
        self.result = result
        super().__init__(
            f"readiness probe on rank {rank} failed ({result.status.name}) "
            f"after {result.attempts} attempt(s): {result.last_response}"
        )
