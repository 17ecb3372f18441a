"""
World-Info Test Configuration and Fixtures

Provides factories for prepared entries and settings, a temporary SQLite
store, and an in-memory chat context for runtime tests.
"""

import pytest

from lorewright_Server_API.app.core.DB_Management.WorldInfo_DB import WorldInfoDB
from lorewright_Server_API.tests.World_Info.world_info_helpers import FakeChatContext

# =====================================================================
# Test Markers
# =====================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests with minimal mocking")
    config.addinivalue_line("markers", "integration: Tests that use the real SQLite store")
    config.addinivalue_line("markers", "property: Property-based tests")
    config.addinivalue_line("markers", "world_book: World-info functionality tests")

# =====================================================================
# Fixtures
# =====================================================================

@pytest.fixture
def world_info_db(tmp_path) -> WorldInfoDB:
    """A fresh on-disk store per test."""
    return WorldInfoDB(str(tmp_path / "world_info.db"))


@pytest.fixture
def chat_context() -> FakeChatContext:
    context = FakeChatContext()
    context.add_chat("chat-1", branch_id="branch-1", entity_profile_id="char-1")
    context.profiles["char-1"] = {
        "name": "Aria",
        "description": "A wandering bard from the northern isles.",
        "personality": "curious",
        "scenario": "A tavern at dusk.",
        "tags": ["fantasy"],
    }
    return context
