# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT

import re

units: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_component = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|s|m|h|d)")
_clock = re.compile(r"^(?:(\d{1,2}):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


def time_in_seconds(arg: int | float | str) -> float:
    """Convert ``arg`` to seconds.  Accepts numbers, numeric strings, clock times
    (``HH:MM:SS`` or ``MM:SS``) and Go-style durations (``1h30m``, ``500ms``)"""
    if isinstance(arg, (float, int)):
        return float(arg)
    text = arg.strip()
    sign = -1.0 if text.startswith("-") else 1.0
    text = text.lstrip("+-")
    if not text:
        raise DurationError(f"invalid duration {arg!r}")
    try:
        return sign * float(text)
    except ValueError:
        pass
    if match := _clock.match(text):
        hours, minutes, seconds = match.groups()
        return sign * (float(hours or 0) * 3600.0 + float(minutes) * 60.0 + float(seconds))
    total, end = 0.0, 0
    for match in _component.finditer(text):
        if match.start() != end:
            break
        value, unit = match.groups()
        total += float(value) * units[unit]
        end = match.end()
    if end == 0 or end != len(text):
        raise DurationError(f"invalid duration {arg!r}")
    return sign * total


class DurationError(ValueError):
    pass
