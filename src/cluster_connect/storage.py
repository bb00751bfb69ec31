# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
"""
Storage binding
---------------

Every file mount of a job is established on every node before any stage runs, and torn down
only after the nodes are done with it.

``COPY``
  A point-in-time snapshot of the source, copied to each node.  The source must exist and
  be readable.

``MOUNT``
  A live directory shared by all nodes.  Workloads use it as a rendezvous (e.g. the head
  writes an index that the workers read), so a write on one node must be visible on every
  other node within ``storage:staleness_bound`` seconds.  Only stores configured as
  ``strong`` in ``storage:consistency`` may be mounted; the binder checks visibility with a
  sentinel file before declaring the mount bound.

Buckets are addressed as ``<store>://<bucket>[/<prefix>]`` (``gs://`` is an alias for
``gcs://``) or by name and store type, and live under ``storage:root`` as
``<root>/<store>/<bucket>``.  ``file://`` URIs and plain paths name local files directly.
"""
import os
import time
import uuid
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from .error import MountError
from .jobspec import MountBinding
from .jobspec import MountMode
from .logging import get_logger

if TYPE_CHECKING:
    from .config import Config
    from .provision import NodeConnection

logger = get_logger(__name__)

store_aliases = {"gs": "gcs", "s3a": "s3"}


@dataclass(frozen=True)
class StoreLocation:
    store: str
    bucket: str | None
    path: str

    @property
    def is_bucket(self) -> bool:
        return self.bucket is not None


@dataclass
class BoundMount:
    """Handle to an established file mount.  ``node_paths[rank]`` is where the mount lives on
    node ``rank``"""

    binding: MountBinding
    location: StoreLocation
    node_paths: list[str] = field(default_factory=list)

    @property
    def mode(self) -> MountMode:
        return self.binding.mode

    @property
    def name(self) -> str:
        return self.location.bucket or self.location.path


class BucketStore:
    def __init__(self, root: str, consistency: dict[str, str]) -> None:
        self.root = root
        self.consistency = consistency

    def locate(self, binding: MountBinding) -> StoreLocation:
        if binding.source is None:
            store = store_aliases.get(binding.store or "local", binding.store or "local")
            if binding.name is None:
                raise MountError(
                    f"file mount {binding.path}: one of 'source' or 'name' is required"
                )
            return self._bucket(store, binding.name, "")
        url = urlparse(binding.source)
        if not url.scheme or len(url.scheme) == 1:
            # plain path (or a windows drive letter)
            path = os.path.abspath(os.path.expanduser(binding.source))
            return StoreLocation(store="file", bucket=None, path=path)
        if url.scheme == "file":
            return StoreLocation(store="file", bucket=None, path=os.path.abspath(url.path))
        store = store_aliases.get(url.scheme, url.scheme)
        if binding.store and store_aliases.get(binding.store, binding.store) != store:
            raise MountError(
                f"file mount {binding.path}: source {binding.source} is not in store "
                f"{binding.store!r}"
            )
        return self._bucket(store, url.netloc, url.path.strip("/"))

    def _bucket(self, store: str, bucket: str, prefix: str) -> StoreLocation:
        if not bucket or "/" in bucket or bucket in (".", ".."):
            raise MountError(f"invalid bucket name {bucket!r}")
        path = os.path.join(self.root, store, bucket)
        if prefix:
            path = os.path.join(path, prefix)
        return StoreLocation(store=store, bucket=bucket, path=path)

    def is_strongly_consistent(self, store: str) -> bool:
        return self.consistency.get(store, "eventual") == "strong"


class StorageBinder:
    def __init__(self, config: "Config | None" = None) -> None:
        if config is None:
            from .config import Config

            config = Config()
        self.config = config
        self.store = BucketStore(
            config.storage_root, dict(config.get("storage:consistency") or {})
        )
        self.staleness_bound = float(config.get("storage:staleness_bound", 2.0))
        self.bound: list[BoundMount] = []
        self._connections: list["NodeConnection"] = []

    def bind(
        self, connections: list["NodeConnection"], bindings: list[MountBinding]
    ) -> list[BoundMount]:
        """Establish every binding on every node, in order.  Partially established mounts
        are torn down if any binding fails."""
        self._connections = list(connections)
        try:
            for binding in bindings:
                bound = BoundMount(binding=binding, location=self.store.locate(binding))
                self.bound.append(bound)
                if binding.mode == MountMode.COPY:
                    self.copy(bound)
                else:
                    self.mount(bound)
        except MountError:
            self.unbind()
            raise
        return list(self.bound)

    def copy(self, bound: BoundMount) -> None:
        binding, location = bound.binding, bound.location
        if not os.path.exists(location.path):
            raise MountError(f"file mount {binding.path}: {binding.identifier} does not exist")
        if not os.access(location.path, os.R_OK):
            raise MountError(f"file mount {binding.path}: {binding.identifier} is not readable")
        for conn in self._connections:
            try:
                bound.node_paths.append(conn.copy_in(location.path, binding.path))
            except (OSError, ValueError) as e:
                raise MountError(
                    f"file mount {binding.path}: copy to rank {conn.node.rank} failed: {e}"
                ) from e
        n = len(bound.node_paths)
        logger.debug(f"copied {binding.identifier} to {binding.path} on {n} node(s)")

    def mount(self, bound: BoundMount) -> None:
        binding, location = bound.binding, bound.location
        if not self.store.is_strongly_consistent(location.store):
            raise MountError(
                f"file mount {binding.path}: store {location.store!r} is eventually consistent "
                "and cannot back a MOUNT; use a strongly consistent store or COPY mode"
            )
        if not os.path.exists(location.path):
            if not location.is_bucket:
                raise MountError(f"file mount {binding.path}: {location.path} does not exist")
            logger.info(f"creating bucket {location.store}://{location.bucket}")
        try:
            os.makedirs(location.path, exist_ok=True)
        except OSError as e:
            raise MountError(f"file mount {binding.path}: {e}") from e
        for conn in self._connections:
            try:
                bound.node_paths.append(conn.link(location.path, binding.path))
            except (OSError, ValueError) as e:
                raise MountError(
                    f"file mount {binding.path}: mount on rank {conn.node.rank} failed: {e}"
                ) from e
        self.verify(bound)
        n = len(bound.node_paths)
        logger.debug(f"mounted {binding.identifier} at {binding.path} on {n} node(s)")

    def verify(self, bound: BoundMount) -> None:
        """Write a sentinel through rank 0 and require every other node to see it within the
        staleness bound"""
        if len(self._connections) < 2:
            return
        path = bound.binding.path
        head, *workers = self._connections
        sentinel = os.path.join(path, f".cluster_connect-{uuid.uuid4().hex}")
        head.write_text(sentinel, head.node.ip)
        try:
            deadline = time.monotonic() + self.staleness_bound
            pending = list(workers)
            while pending:
                pending = [conn for conn in pending if not conn.exists(sentinel)]
                if pending and time.monotonic() >= deadline:
                    ranks = ", ".join(str(conn.node.rank) for conn in pending)
                    raise MountError(
                        f"file mount {path}: write on rank 0 not visible on rank(s) {ranks} "
                        f"within {self.staleness_bound}s"
                    )
                if pending:
                    time.sleep(0.05)
        finally:
            head.remove(sentinel)

    def unbind(self) -> None:
        """Tear down MOUNT bindings.  COPY snapshots stay with the node"""
        for bound in reversed(self.bound):
            if bound.mode != MountMode.MOUNT:
                continue
            for conn in self._connections[: len(bound.node_paths)]:
                try:
                    conn.unlink(bound.binding.path)
                except OSError as e:
                    rank = conn.node.rank
                    logger.warning(f"failed to unmount {bound.binding.path} on rank {rank}: {e}")
        self.bound.clear()
