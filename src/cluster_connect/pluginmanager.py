# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import importlib

import pluggy

from . import hookspec
from .logging import get_logger

logger = get_logger(__name__)


class ClusterConnectPluginManager(pluggy.PluginManager):
    """Plugins come from three places: the built in modules (the local backend and the
    bundled machine catalog), modules advertised under the ``cluster_connect`` entry point
    group, and modules named in ``config:plugins``"""

    def __init__(self):
        super().__init__(hookspec.project_name)
        from . import local
        from . import resources

        self.add_hookspecs(hookspec)
        self.register(resources)
        self.register(local)
        self.load_setuptools_entrypoints(hookspec.project_name)

    def consider_plugin(self, name: str) -> None:
        """Import and register the module ``name``.  ``no:name`` unregisters and blocks it"""
        if name.startswith("no:"):
            name = name[3:]
            self.unregister(name=name)
            self.set_blocked(name)
            logger.debug(f"blocked plugin {name}")
            return
        if self.is_blocked(name) or self.has_plugin(name):
            return
        try:
            module = importlib.import_module(name)
        except ImportError as e:
            raise ImportError(f"Error importing plugin {name!r}: {e}") from e
        if self.is_registered(module):
            # already loaded through its entry point
            return
        self.register(module, name=name)
        logger.debug(f"registered plugin {name}")
