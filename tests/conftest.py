"""
Pytest fixtures for test infrastructure.

This module is automatically loaded by pytest and provides shared fixtures.
For fakes and seed helpers, see test_helpers.py.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from dealscout.archivist.database import build_engine, init_db, make_session_scope


# =============================================================================
# Database fixtures
# =============================================================================
@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions really contend for locks."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dealscout.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_scope(db_engine):
    """get_session() replacement bound to the test database."""
    return make_session_scope(async_sessionmaker(db_engine, expire_on_commit=False))


# =============================================================================
# Settings fixtures
# =============================================================================
@pytest.fixture
def cron_secret(monkeypatch):
    from dealscout.config.settings import settings
    monkeypatch.setattr(settings, "cron_secret", "test-secret,rotated-secret")
    return "test-secret"
