# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import copy
from typing import Any


def merge(dest: Any, source: Any) -> Any:
    """Merge ``source`` into a copy of ``dest``.  Mappings are merged recursively, lists are
    concatenated, and anything else in ``source`` replaces ``dest``"""
    if isinstance(dest, dict) and isinstance(source, dict):
        merged = dict(dest)
        for key, value in source.items():
            if key in merged:
                merged[key] = merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged
    if isinstance(dest, list) and isinstance(source, list):
        return dest + copy.deepcopy(source)
    return copy.deepcopy(source)
