"""
Abstract interface for the wide-column store colmgr governs.

Rows are keyed by bytes, grouped into named column families, and every cell
keeps several timestamped versions. Concrete backends implement ColumnStore;
the governed store in ``colmgr.interceptor`` implements the same interface on
top of any of them.
"""

import copy
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..config import DEFAULT_NAMESPACE, split_table_name


def current_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def encode_long(value: int) -> bytes:
    """Encode a counter value as an 8-byte big-endian signed integer."""
    return struct.pack(">q", value)


def decode_long(value: bytes) -> int:
    """Decode an 8-byte big-endian signed integer."""
    if len(value) != 8:
        raise ValueError(f"Counter cell must be 8 bytes, got {len(value)}")
    return struct.unpack(">q", value)[0]


@dataclass(frozen=True, order=True)
class TableName:
    """Fully qualified table name (``namespace:qualifier``)."""

    namespace: str
    qualifier: str

    @classmethod
    def value_of(cls, name: Union[str, "TableName"]) -> "TableName":
        """Parse a table name, defaulting the namespace."""
        if isinstance(name, TableName):
            return name
        namespace, qualifier = split_table_name(name)
        return cls(namespace, qualifier)

    @property
    def name_as_string(self) -> str:
        """Table name without the default namespace prefix."""
        if self.namespace == DEFAULT_NAMESPACE:
            return self.qualifier
        return str(self)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.qualifier}"


TableLike = Union[str, TableName]


@dataclass(frozen=True)
class Cell:
    """A single version of a column value."""

    family: str
    qualifier: bytes
    value: bytes
    timestamp: Optional[int] = None

    @property
    def column(self) -> Tuple[str, bytes]:
        """(family, qualifier) pair identifying the column."""
        return self.family, self.qualifier


@dataclass
class Put:
    """A set of cells to write into one row."""

    row: bytes
    cells: List[Cell] = field(default_factory=list)

    def add_column(
        self,
        family: str,
        qualifier: bytes,
        value: bytes,
        timestamp: Optional[int] = None,
    ) -> "Put":
        self.cells.append(Cell(family, qualifier, value, timestamp))
        return self

    @property
    def families(self) -> List[str]:
        """Distinct families touched by this put, in first-seen order."""
        seen: Dict[str, None] = {}
        for cell in self.cells:
            seen.setdefault(cell.family, None)
        return list(seen)

    def cells_for_family(self, family: str) -> List[Cell]:
        return [cell for cell in self.cells if cell.family == family]

    @property
    def is_empty(self) -> bool:
        return not self.cells


@dataclass
class RowResult:
    """Cells read from one row, newest version first within each column."""

    row: bytes
    cells: List[Cell] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.cells

    def columns(self, family: Optional[str] = None) -> List[Tuple[str, bytes]]:
        """Distinct (family, qualifier) pairs present in the result."""
        seen: Dict[Tuple[str, bytes], None] = {}
        for cell in self.cells:
            if family is None or cell.family == family:
                seen.setdefault(cell.column, None)
        return list(seen)

    def versions(self, family: str, qualifier: bytes) -> List[Cell]:
        return [
            cell for cell in self.cells
            if cell.family == family and cell.qualifier == qualifier
        ]

    def value(self, family: str, qualifier: bytes) -> Optional[bytes]:
        """Latest value of a column, or None when absent."""
        versions = self.versions(family, qualifier)
        return versions[0].value if versions else None


@dataclass
class NamespaceDescriptor:
    """Descriptor of a namespace."""

    name: str
    configuration: Dict[str, str] = field(default_factory=dict)


@dataclass
class FamilyDescriptor:
    """Descriptor of a column family."""

    VERSIONS = "VERSIONS"

    name: str
    values: Dict[str, str] = field(default_factory=dict)
    configuration: Dict[str, str] = field(default_factory=dict)

    @property
    def max_versions(self) -> int:
        """Versions retained per cell (defaults to 1)."""
        return int(self.values.get(self.VERSIONS, "1"))

    @max_versions.setter
    def max_versions(self, versions: int) -> None:
        if versions < 1:
            raise ValueError("max_versions must be at least 1")
        self.values[self.VERSIONS] = str(versions)


@dataclass
class TableDescriptor:
    """Descriptor of a table and its column families."""

    name: TableName
    values: Dict[str, str] = field(default_factory=dict)
    configuration: Dict[str, str] = field(default_factory=dict)
    families: Dict[str, FamilyDescriptor] = field(default_factory=dict)

    def __post_init__(self):
        self.name = TableName.value_of(self.name)

    def add_family(self, family: FamilyDescriptor) -> "TableDescriptor":
        self.families[family.name] = family
        return self

    def remove_family(self, name: str) -> Optional[FamilyDescriptor]:
        return self.families.pop(name, None)

    def get_family(self, name: str) -> Optional[FamilyDescriptor]:
        return self.families.get(name)

    @property
    def family_names(self) -> List[str]:
        return list(self.families)

    def copy(self) -> "TableDescriptor":
        return copy.deepcopy(self)


class WriteMultiplexer(ABC):
    """
    Buffered, queue-backed writer shared by many callers.

    ``put`` only reports whether a put was queued; the store applies queued
    puts asynchronously.
    """

    @abstractmethod
    async def put(self, table: TableLike, put: Put, retry: int = 0) -> bool:
        """Queue one put. Returns True if it was queued."""
        pass

    async def put_all(self, table: TableLike, puts: Sequence[Put]) -> List[Put]:
        """Queue several puts. Returns the puts that could not be queued."""
        failed = []
        for put in puts:
            if not await self.put(table, put):
                failed.append(put)
        return failed

    @abstractmethod
    async def flush(self) -> None:
        """Wait until every queued put has been applied or dropped."""
        pass

    async def close(self) -> None:
        await self.flush()


class ColumnStore(ABC):
    """
    Abstract base class for wide-column store backends.

    Implementations must make ``increment`` and ``check_and_put`` atomic per
    row and must enforce each family's max-versions on insertion.
    """

    # Data operations

    @abstractmethod
    async def put(self, table: TableLike, puts: Union[Put, Sequence[Put]]) -> None:
        """Write one or more puts."""
        pass

    @abstractmethod
    async def get(
        self,
        table: TableLike,
        row: bytes,
        families: Optional[Iterable[str]] = None,
        columns: Optional[Iterable[Tuple[str, bytes]]] = None,
        max_versions: int = 1,
    ) -> RowResult:
        """Read a row. An absent row yields an empty RowResult."""
        pass

    @abstractmethod
    def scan(
        self,
        table: TableLike,
        families: Optional[Iterable[str]] = None,
        start_row: Optional[bytes] = None,
        stop_row: Optional[bytes] = None,
        max_versions: int = 1,
        limit: Optional[int] = None,
    ) -> AsyncIterator[RowResult]:
        """Iterate rows in key order; start inclusive, stop exclusive."""
        pass

    @abstractmethod
    async def delete(
        self,
        table: TableLike,
        row: bytes,
        family: Optional[str] = None,
        qualifier: Optional[bytes] = None,
    ) -> None:
        """Delete a row, a family of a row, or a single column (all versions)."""
        pass

    @abstractmethod
    async def increment(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        amount: int = 1,
    ) -> int:
        """Atomically add to an 8-byte counter cell and return the new value."""
        pass

    @abstractmethod
    async def check_and_put(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        expected: Optional[bytes],
        put: Put,
    ) -> bool:
        """
        Apply ``put`` only if the latest value of the checked cell equals
        ``expected`` (None meaning the cell is absent).

        Returns:
            True if the put was applied
        """
        pass

    # Administrative operations

    @abstractmethod
    async def list_namespaces(self) -> List[NamespaceDescriptor]:
        pass

    @abstractmethod
    async def get_namespace(self, name: str) -> Optional[NamespaceDescriptor]:
        pass

    @abstractmethod
    async def create_namespace(self, descriptor: NamespaceDescriptor) -> None:
        pass

    @abstractmethod
    async def modify_namespace(self, descriptor: NamespaceDescriptor) -> None:
        pass

    @abstractmethod
    async def delete_namespace(self, name: str) -> None:
        """Delete an empty namespace."""
        pass

    @abstractmethod
    async def list_tables(self, namespace: Optional[str] = None) -> List[TableDescriptor]:
        pass

    @abstractmethod
    async def get_table(self, table: TableLike) -> Optional[TableDescriptor]:
        pass

    @abstractmethod
    async def create_table(self, descriptor: TableDescriptor) -> None:
        pass

    @abstractmethod
    async def modify_table(self, descriptor: TableDescriptor) -> None:
        pass

    @abstractmethod
    async def delete_table(self, table: TableLike) -> None:
        pass

    @abstractmethod
    async def truncate_table(self, table: TableLike) -> None:
        """Remove every row while keeping the table descriptor."""
        pass

    @abstractmethod
    def create_multiplexer(self, queue_size: int = 10000) -> WriteMultiplexer:
        pass

    async def table_exists(self, table: TableLike) -> bool:
        return await self.get_table(table) is not None

    async def namespace_exists(self, name: str) -> bool:
        return await self.get_namespace(name) is not None

    async def close(self) -> None:
        """Release backend resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
