"""
Tests for colmgr.connection module.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from colmgr.config import REPOSITORY_NAMESPACE, GovernanceConfig, LoggingConfig
from colmgr.connection import GovernedSession, connect
from colmgr.interceptor import GovernedColumnStore
from colmgr.store.memory import InMemoryColumnStore


class TestGovernedSession:
    """Test session construction and lifecycle."""

    @pytest.mark.asyncio
    async def test_activated_session(self, store, config):
        session = await connect(store, config)
        assert isinstance(session.store, GovernedColumnStore)
        assert session.raw_store is store
        assert session.monitor is session.repository.monitor
        assert session.sync_report is not None
        assert session.sync_report.in_sync
        assert await store.namespace_exists(REPOSITORY_NAMESPACE)

    @pytest.mark.asyncio
    async def test_not_activated_session(self, store, caplog):
        with caplog.at_level(logging.INFO, logger="colmgr.connection"):
            session = await connect(store, GovernanceConfig(activated=False))
        assert session.store is store
        assert session.sync_report is None
        assert not await store.namespace_exists(REPOSITORY_NAMESPACE)
        assert "not activated" in caplog.text

    @pytest.mark.asyncio
    async def test_default_config_from_environment(self, store, monkeypatch):
        monkeypatch.setenv("COLMGR_ACTIVATED", "true")
        monkeypatch.setenv("COLMGR_USER_NAME", "env_user")
        session = await connect(store)
        assert session.activated
        assert session.repository.ledger.user_name == "env_user"

    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, store, config):
        session = GovernedSession(store, config)
        with patch.object(session.repository, "open", new_callable=AsyncMock) as mock_open:
            await session.open()
            await session.open()
        mock_open.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, config):
        store = InMemoryColumnStore()
        store.close = AsyncMock()
        async with GovernedSession(store, config) as session:
            assert session.sync_report is not None
        store.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_configure_logging(self, store, config):
        config = config.model_copy(update={"logging": LoggingConfig(level="DEBUG")})
        with patch.object(LoggingConfig, "apply") as mock_apply:
            await connect(store, config, configure_logging=True)
        mock_apply.assert_called_once()

    @pytest.mark.asyncio
    async def test_sessions_with_different_settings_coexist(self, store, config, wildcard_config):
        broad = await connect(store, config)
        narrow = await connect(store, wildcard_config)
        assert broad.repository.is_included_table("other:t")
        assert not narrow.repository.is_included_table("other:t")
