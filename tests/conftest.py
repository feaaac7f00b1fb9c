"""
Pytest fixtures for the test suite.

Tests use a SQLite database file under tmp_path instead of `:memory:`: the
hierarchy, the grant store and request sessions each open their own sessions,
so they need separate connections to one database.
"""
from __future__ import annotations

import pytest
import redis
from sqlalchemy import create_engine

from orgscope.db import filters as _filters  # noqa: F401  (register session listeners)
from orgscope.db.base import Base
from orgscope.db.session import create_session_factory
from orgscope.grants.store import GrantStore
from orgscope.org.hierarchy import OrgUnitHierarchy
from orgscope.security.resolver import ScopeResolver


@pytest.fixture
def engine(tmp_path):
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orgscope-test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def tables(engine):
    """Create all ORM tables (core models + test business entities)."""
    import orgscope.models  # noqa: F401
    import scoped_entities  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(tables):
    return create_session_factory(tables)


@pytest.fixture
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def hierarchy(session_factory):
    return OrgUnitHierarchy(session_factory)


@pytest.fixture
def grant_store(session_factory):
    return GrantStore(session_factory)


@pytest.fixture
def resolver(hierarchy, grant_store):
    return ScopeResolver(hierarchy, grant_store)


class FakeRedis:
    """Just enough of redis.Redis for the cache tier (get / setex / delete)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        existed = key in self.store
        self.store.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("connection refused")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("connection refused")

    def delete(self, key):
        raise redis.ConnectionError("connection refused")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()
