"""Elevation probe, run once at startup to build the Capabilities flag."""

from __future__ import annotations

import ctypes
import logging
import os

from driverstage.core.model import Capabilities

LOGGER = logging.getLogger(__name__)


def is_elevated() -> bool:
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except AttributeError:
        pass
    geteuid = getattr(os, "geteuid", None)
    if geteuid is None:
        return False
    return geteuid() == 0


def detect_capabilities() -> Capabilities:
    elevated = is_elevated()
    LOGGER.debug("Running elevated: %s", elevated)
    return Capabilities(elevated=elevated)
