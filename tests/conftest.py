"""
Pytest configuration and shared fixtures for colmgr tests.

Most tests run against the in-memory store; Redis-backed tests live under
tests/integration and skip without a reachable server.
"""

import os
from typing import AsyncGenerator

import pytest

from colmgr.config import GovernanceConfig
from colmgr.connection import GovernedSession, connect
from colmgr.store.base import FamilyDescriptor, NamespaceDescriptor, TableDescriptor, TableName
from colmgr.store.memory import InMemoryColumnStore


# ============================================================================
# Helpers
# ============================================================================

async def create_table(store, name: str, *families: str, versions: int = 1, **values) -> TableDescriptor:
    """Create a table (and its namespace when missing) directly on ``store``."""
    table = TableName.value_of(name)
    if not await store.namespace_exists(table.namespace):
        await store.create_namespace(NamespaceDescriptor(table.namespace))
    descriptor = TableDescriptor(table, values=dict(values))
    for family in families or ("cf1",):
        family_descriptor = FamilyDescriptor(family)
        family_descriptor.max_versions = versions
        descriptor.add_family(family_descriptor)
    await store.create_table(descriptor)
    return descriptor


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clean_colmgr_environment(monkeypatch):
    """Keep COLMGR_* variables of the developer's shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("COLMGR_") and key != "COLMGR_TEST_REDIS_URL":
            monkeypatch.delenv(key)


@pytest.fixture
def config() -> GovernanceConfig:
    """Activated configuration governing every user table."""
    return GovernanceConfig(activated=True, user_name="tester", repository_max_versions=10)


@pytest.fixture
def wildcard_config() -> GovernanceConfig:
    """Activated configuration governing only the ``gov`` namespace."""
    return GovernanceConfig(
        activated=True, user_name="tester", included_tables=["gov:*"]
    )


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def store() -> InMemoryColumnStore:
    return InMemoryColumnStore()


@pytest.fixture
async def session(store, config) -> AsyncGenerator[GovernedSession, None]:
    """Opened governed session over a store holding ``gov:orders`` (cf1, cf2)."""
    await create_table(store, "gov:orders", "cf1", "cf2")
    governed = await connect(store, config)
    yield governed
    await governed.close()


@pytest.fixture
def repository(session):
    return session.repository
