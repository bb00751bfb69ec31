# Copyright NTESS. See COPYRIGHT file for details.
#
# SPDX-License-Identifier: MIT
import logging as builtin_logging
import sys

root_name = "cluster_connect"


def get_logger(name: str) -> builtin_logging.Logger:
    parts = name.split(".")
    if parts[0] != root_name:
        parts.insert(0, root_name)
    return builtin_logging.getLogger(".".join(parts))


loglevelmap: dict[str, int] = {
    "CRITICAL": builtin_logging.CRITICAL,
    "FATAL": builtin_logging.FATAL,
    "ERROR": builtin_logging.ERROR,
    "WARN": builtin_logging.WARNING,
    "WARNING": builtin_logging.WARNING,
    "INFO": builtin_logging.INFO,
    "DEBUG": builtin_logging.DEBUG,
    "NOTSET": builtin_logging.NOTSET,
}


def set_logging_level(levelname: str) -> None:
    logger = builtin_logging.getLogger(root_name)
    level = loglevelmap[levelname.upper()]
    for h in logger.handlers:
        h.setLevel(level)
    logger.setLevel(level)


def configure_logging(levelname: str = "WARNING") -> None:
    logger = builtin_logging.getLogger(root_name)
    if not logger.handlers:
        sh = builtin_logging.StreamHandler(sys.stderr)
        fmt = builtin_logging.Formatter("==> %(levelname)s: %(name)s: %(message)s")
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    set_logging_level(levelname)
