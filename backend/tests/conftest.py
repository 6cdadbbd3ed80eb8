"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

# Add backend and the CLI package to path
root_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(root_path / "backend"))
sys.path.insert(0, str(root_path / "scripts" / "rangectl"))

# Import fixtures
from tests.fixtures.range_fixtures import (  # noqa: E402
    FakeRuntime,
    api_client,
    db_manager,
    fake_runtime,
    join_service,
    pool_service,
    range_settings,
    reporting_service,
    scoring_service,
    session_service,
)

__all__ = [
    "FakeRuntime",
    "api_client",
    "db_manager",
    "fake_runtime",
    "join_service",
    "pool_service",
    "range_settings",
    "reporting_service",
    "scoring_service",
    "session_service",
]


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
