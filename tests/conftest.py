"""
Global pytest configuration and fixtures for schemaledger tests

Provides:
- File-backed SQLite target databases
- Changelog factory writing real files under tmp_path
- Engine component bundle
"""

from typing import List

import pytest

from schemaledger.database import TargetDatabase
from tests.fixtures.builders import build_components, load_changelog


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


# ============================================================================
# Changelog Fixtures
# ============================================================================

@pytest.fixture
def make_changelog(tmp_path):
    """Factory writing and loading a changelog in tmp_path."""
    def _make(changesets: List[dict]):
        return load_changelog(tmp_path, changesets)
    return _make


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_path(tmp_path):
    """Path of the SQLite target database file."""
    return tmp_path / 'target.db'


@pytest.fixture
async def database(db_path):
    """File-backed SQLite target database."""
    db = TargetDatabase(str(db_path))
    yield db
    await db.close()


@pytest.fixture
def engine(database):
    """Ledger, executor, rollback engine and reporter bound to ``database``."""
    return build_components(database)
