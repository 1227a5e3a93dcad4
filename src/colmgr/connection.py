"""
Governed session construction for colmgr.

``connect`` is the single entry point applications use: it takes a store
backend and a GovernanceConfig and returns a session whose ``store`` handle
applies governance to included tables. Configuration is carried by the
session, so sessions with different settings can coexist in one process.
"""

import logging
from typing import Optional

from .config import GovernanceConfig
from .interceptor import GovernedColumnStore
from .repository.monitor import ChangeEventMonitor
from .repository.repository import Repository
from .repository.synchronizer import SyncReport
from .store.base import ColumnStore


logger = logging.getLogger(__name__)


class GovernedSession:
    """
    One governed connection to a store.

    When the config is not activated the session hands out the raw store and
    performs no repository work at all.
    """

    def __init__(self, store: ColumnStore, config: GovernanceConfig):
        self.raw_store = store
        self.config = config
        self.repository = Repository(store, config)
        self.sync_report: Optional[SyncReport] = None
        self._governed = GovernedColumnStore(store, self.repository)
        self._opened = False

    @property
    def activated(self) -> bool:
        return self.config.activated

    @property
    def store(self) -> ColumnStore:
        """Store handle applications should use for every read and write."""
        return self._governed if self.activated else self.raw_store

    @property
    def monitor(self) -> ChangeEventMonitor:
        return self.repository.monitor

    async def open(self) -> "GovernedSession":
        """Install repository structures, load the model and run the sync check."""
        if self._opened:
            return self
        if self.activated:
            logger.info(f"Opening governed session: {self.config.summary()}")
            await self.repository.open()
            self.sync_report = await self.repository.check_synchronization()
        else:
            logger.info("Column management not activated; store used unmodified")
        self._opened = True
        return self

    async def close(self) -> None:
        await self.raw_store.close()
        self._opened = False

    async def __aenter__(self) -> "GovernedSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


async def connect(
    store: ColumnStore,
    config: Optional[GovernanceConfig] = None,
    configure_logging: bool = False,
) -> GovernedSession:
    """
    Build and open a governed session.

    Args:
        store: Store backend to govern
        config: Governance configuration (environment/defaults when omitted)
        configure_logging: Apply ``config.logging`` to the root logger

    Returns:
        An opened GovernedSession
    """
    config = config if config is not None else GovernanceConfig()
    if configure_logging:
        config.logging.apply()
    session = GovernedSession(store, config)
    return await session.open()
