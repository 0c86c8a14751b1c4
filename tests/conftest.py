"""
Pytest configuration and fixtures for the retention engine tests.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set test environment variables before importing config
# Use a SEPARATE test database to avoid polluting development data
os.environ['ENVIRONMENT'] = 'development'
os.environ['DB_HOST'] = os.environ.get('TEST_DB_HOST', 'localhost')
os.environ['DB_PORT'] = os.environ.get('TEST_DB_PORT', '5432')
os.environ['POSTGRES_DB'] = 'retention_test'
os.environ['POSTGRES_USER'] = os.environ.get('TEST_DB_USER', 'app_user')
os.environ['POSTGRES_PASSWORD'] = os.environ.get('TEST_DB_PASSWORD', 'app_password')

# Retention knobs must come from defaults unless a test sets them
for _key in list(os.environ):
    if _key.startswith(('CLEANUP_', 'RETENTION_MAINTENANCE_', 'API_')):
        del os.environ[_key]

from helpers import FakeDatabaseManager, FakeStore, NOW  # noqa: E402


@pytest.fixture(autouse=True)
def reset_config():
    """Drop the cached global config around every test."""
    import config
    config._config = None
    yield
    config._config = None


@pytest.fixture
def store():
    """Provide an empty in-memory store."""
    return FakeStore()


@pytest.fixture
def fake_db(store):
    """Provide a database manager backed by the in-memory store."""
    return FakeDatabaseManager(store)


@pytest.fixture
def now():
    """Fixed 'now' used by age-rule tests."""
    return NOW


@pytest.fixture
def default_policies():
    """Built-in policies with default thresholds."""
    from config import RetentionConfig
    from retention_policy import build_policies
    return build_policies(RetentionConfig())
