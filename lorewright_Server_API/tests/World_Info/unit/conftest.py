"""
Unit-test fixtures for world info.
"""

import pytest

from lorewright_Server_API.app.core.config import clear_config_cache


@pytest.fixture(autouse=True)
def _fresh_config():
    """Configuration is cached; make every test read the current env."""
    clear_config_cache()
    yield
    clear_config_cache()
