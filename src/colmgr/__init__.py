"""
colmgr: column metadata governance for wide-column stores.

colmgr wraps a wide-column store behind the same interface and keeps a
versioned repository of schema metadata: observed columns, administrator
column definitions with write-time enforcement, column aliasing, and a
change-event history of every attribute.
"""

__version__ = "0.1.0"
__author__ = "colmgr Contributors"

from .config import GovernanceConfig, LoggingConfig, RedisStoreConfig
from .connection import GovernedSession, connect
from .exceptions import (
    AliasingAlreadyInUseError,
    AliasNotFoundError,
    AuditBookkeepingError,
    ColmgrError,
    ColumnDefinitionNotFoundError,
    ColumnManagerError,
    ColumnValueInvalidError,
    ConfigurationError,
    StoreError,
    TableNotIncludedError,
)
from .interceptor import GovernedColumnStore, GovernedMultiplexer
from .repository import ColumnDefinition, DiscoveredColumn, Repository, SchemaArchive

__all__ = [
    "__version__",
    "GovernanceConfig",
    "LoggingConfig",
    "RedisStoreConfig",
    "GovernedSession",
    "connect",
    "GovernedColumnStore",
    "GovernedMultiplexer",
    "ColumnDefinition",
    "DiscoveredColumn",
    "Repository",
    "SchemaArchive",
    "ColmgrError",
    "ConfigurationError",
    "StoreError",
    "TableNotIncludedError",
    "ColumnManagerError",
    "ColumnDefinitionNotFoundError",
    "ColumnValueInvalidError",
    "AliasingAlreadyInUseError",
    "AliasNotFoundError",
    "AuditBookkeepingError",
]
