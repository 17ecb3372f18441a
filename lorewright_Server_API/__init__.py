"""
Top-level package initializer for lorewright_Server_API.

Applies conservative environment defaults in test environments so that a
test run never writes the world-info store into the source tree and does not
pick up a developer's YAML overlay.
"""

from __future__ import annotations

import os
import sys
import tempfile
from loguru import logger

__version__ = "0.1.0"


def _under_pytest() -> bool:
    if "PYTEST_CURRENT_TEST" in os.environ:
        return True
    return any("pytest" in (arg or "") for arg in sys.argv)


def _env_flag_true(name: str) -> bool:
    val = os.getenv(name, "").strip().lower()
    return val in {"1", "true", "yes", "on"}


if _env_flag_true("TESTING") or _under_pytest():
    os.environ.setdefault("WORLD_INFO_DB_PATH", os.path.join(tempfile.gettempdir(), "lorewright_test", "world_info.db"))
    os.environ.pop("WORLD_INFO_CONFIG_YAML", None)
    logger.debug("lorewright_Server_API: test environment defaults applied")
