"""
Wide-column store interface and backends.
"""

from .base import (
    Cell,
    ColumnStore,
    FamilyDescriptor,
    NamespaceDescriptor,
    Put,
    RowResult,
    TableDescriptor,
    TableLike,
    TableName,
    WriteMultiplexer,
)
from .memory import InMemoryColumnStore
from .multiplexer import QueueingMultiplexer
from .redis_store import RedisColumnStore

__all__ = [
    "Cell",
    "ColumnStore",
    "FamilyDescriptor",
    "NamespaceDescriptor",
    "Put",
    "RowResult",
    "TableDescriptor",
    "TableLike",
    "TableName",
    "WriteMultiplexer",
    "InMemoryColumnStore",
    "QueueingMultiplexer",
    "RedisColumnStore",
]
