# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import importlib.resources
import shlex

import jinja2


def make_template_env(*dirs: str) -> jinja2.Environment:
    """Returns a configured environment for template rendering."""
    template_dirs: set[str] = {
        str(importlib.resources.files("cluster_connect").joinpath("templates"))
    }
    template_dirs.update(dirs)
    loader = jinja2.FileSystemLoader(tuple(sorted(template_dirs)))
    env = jinja2.Environment(loader=loader, trim_blocks=True, lstrip_blocks=True)
    env.filters["shquote"] = shlex.quote
    return env
