"""
In-process ColumnStore backend.

Keeps every namespace, table and cell version in dictionaries. Each operation
yields to the event loop before touching state, so concurrent callers really
interleave, while the state change itself runs without an intervening await
and is therefore atomic.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..config import DEFAULT_NAMESPACE
from ..exceptions import (
    NamespaceExistsError,
    NamespaceNotFoundError,
    StoreError,
    TableExistsError,
    TableNotFoundError,
)
from .base import (
    Cell,
    ColumnStore,
    NamespaceDescriptor,
    Put,
    RowResult,
    TableDescriptor,
    TableLike,
    TableName,
    current_millis,
    decode_long,
    encode_long,
)
from .multiplexer import QueueingMultiplexer


logger = logging.getLogger(__name__)

# (family, qualifier) -> versions as (timestamp, value), newest first
_RowData = Dict[Tuple[str, bytes], List[Tuple[int, bytes]]]


@dataclass
class _TableData:
    descriptor: TableDescriptor
    rows: Dict[bytes, _RowData] = field(default_factory=dict)


class InMemoryColumnStore(ColumnStore):
    """Dictionary-backed wide-column store."""

    def __init__(self):
        self._namespaces: Dict[str, NamespaceDescriptor] = {
            DEFAULT_NAMESPACE: NamespaceDescriptor(DEFAULT_NAMESPACE)
        }
        self._tables: Dict[TableName, _TableData] = {}
        self._multiplexers: List[QueueingMultiplexer] = []

    def _table_data(self, table: TableLike) -> _TableData:
        name = TableName.value_of(table)
        data = self._tables.get(name)
        if data is None:
            raise TableNotFoundError(str(name))
        return data

    @staticmethod
    def _insert(data: _TableData, row: bytes, cell: Cell, timestamp: int) -> None:
        family = data.descriptor.get_family(cell.family)
        if family is None:
            raise StoreError(
                f"Column family '{cell.family}' does not exist in table "
                f"{data.descriptor.name}"
            )
        versions = data.rows.setdefault(row, {}).setdefault(cell.column, [])
        versions[:] = [v for v in versions if v[0] != timestamp]
        versions.append((timestamp, cell.value))
        versions.sort(key=lambda v: v[0], reverse=True)
        del versions[family.max_versions:]

    def _apply_put(self, data: _TableData, put: Put) -> None:
        now = current_millis()
        for cell in put.cells:
            if data.descriptor.get_family(cell.family) is None:
                raise StoreError(
                    f"Column family '{cell.family}' does not exist in table "
                    f"{data.descriptor.name}"
                )
        for cell in put.cells:
            timestamp = cell.timestamp if cell.timestamp is not None else now
            self._insert(data, put.row, cell, timestamp)

    @staticmethod
    def _latest(data: _TableData, row: bytes, family: str, qualifier: bytes) -> Optional[bytes]:
        versions = data.rows.get(row, {}).get((family, qualifier))
        return versions[0][1] if versions else None

    @staticmethod
    def _build_result(
        row: bytes,
        row_data: _RowData,
        families: Optional[Iterable[str]],
        columns: Optional[Iterable[Tuple[str, bytes]]],
        max_versions: int,
    ) -> RowResult:
        family_filter = set(families) if families is not None else None
        column_filter = set(columns) if columns is not None else None
        cells = []
        for column in sorted(row_data):
            family, qualifier = column
            if family_filter is not None and family not in family_filter:
                if column_filter is None or column not in column_filter:
                    continue
            if column_filter is not None and column not in column_filter:
                if family_filter is None or family not in family_filter:
                    continue
            for timestamp, value in row_data[column][:max_versions]:
                cells.append(Cell(family, qualifier, value, timestamp))
        return RowResult(row, cells)

    async def put(self, table: TableLike, puts: Union[Put, Sequence[Put]]) -> None:
        await asyncio.sleep(0)
        data = self._table_data(table)
        if isinstance(puts, Put):
            puts = [puts]
        for put in puts:
            self._apply_put(data, put)

    async def get(
        self,
        table: TableLike,
        row: bytes,
        families: Optional[Iterable[str]] = None,
        columns: Optional[Iterable[Tuple[str, bytes]]] = None,
        max_versions: int = 1,
    ) -> RowResult:
        await asyncio.sleep(0)
        data = self._table_data(table)
        row_data = data.rows.get(row)
        if not row_data:
            return RowResult(row)
        return self._build_result(row, row_data, families, columns, max_versions)

    async def scan(
        self,
        table: TableLike,
        families: Optional[Iterable[str]] = None,
        start_row: Optional[bytes] = None,
        stop_row: Optional[bytes] = None,
        max_versions: int = 1,
        limit: Optional[int] = None,
    ) -> AsyncIterator[RowResult]:
        await asyncio.sleep(0)
        data = self._table_data(table)
        families = list(families) if families is not None else None
        returned = 0
        for row in sorted(data.rows):
            if start_row is not None and row < start_row:
                continue
            if stop_row is not None and row >= stop_row:
                break
            result = self._build_result(row, data.rows[row], families, None, max_versions)
            if result.is_empty:
                continue
            yield result
            returned += 1
            if limit is not None and returned >= limit:
                break

    async def delete(
        self,
        table: TableLike,
        row: bytes,
        family: Optional[str] = None,
        qualifier: Optional[bytes] = None,
    ) -> None:
        await asyncio.sleep(0)
        data = self._table_data(table)
        row_data = data.rows.get(row)
        if row_data is None:
            return
        if family is None:
            del data.rows[row]
            return
        for column in list(row_data):
            if column[0] == family and (qualifier is None or column[1] == qualifier):
                del row_data[column]
        if not row_data:
            del data.rows[row]

    async def increment(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        amount: int = 1,
    ) -> int:
        await asyncio.sleep(0)
        data = self._table_data(table)
        current = self._latest(data, row, family, qualifier)
        new_value = (decode_long(current) if current is not None else 0) + amount
        self._insert(
            data, row, Cell(family, qualifier, encode_long(new_value)), current_millis()
        )
        return new_value

    async def check_and_put(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        expected: Optional[bytes],
        put: Put,
    ) -> bool:
        await asyncio.sleep(0)
        data = self._table_data(table)
        if put.row != row:
            raise StoreError("check_and_put requires the put to target the checked row")
        if self._latest(data, row, family, qualifier) != expected:
            return False
        self._apply_put(data, put)
        return True

    async def list_namespaces(self) -> List[NamespaceDescriptor]:
        await asyncio.sleep(0)
        return [
            NamespaceDescriptor(ns.name, dict(ns.configuration))
            for ns in sorted(self._namespaces.values(), key=lambda ns: ns.name)
        ]

    async def get_namespace(self, name: str) -> Optional[NamespaceDescriptor]:
        await asyncio.sleep(0)
        ns = self._namespaces.get(name)
        return NamespaceDescriptor(ns.name, dict(ns.configuration)) if ns else None

    async def create_namespace(self, descriptor: NamespaceDescriptor) -> None:
        await asyncio.sleep(0)
        if descriptor.name in self._namespaces:
            raise NamespaceExistsError(descriptor.name)
        self._namespaces[descriptor.name] = NamespaceDescriptor(
            descriptor.name, dict(descriptor.configuration)
        )

    async def modify_namespace(self, descriptor: NamespaceDescriptor) -> None:
        await asyncio.sleep(0)
        if descriptor.name not in self._namespaces:
            raise NamespaceNotFoundError(descriptor.name)
        self._namespaces[descriptor.name] = NamespaceDescriptor(
            descriptor.name, dict(descriptor.configuration)
        )

    async def delete_namespace(self, name: str) -> None:
        await asyncio.sleep(0)
        if name not in self._namespaces:
            raise NamespaceNotFoundError(name)
        if any(table.namespace == name for table in self._tables):
            raise StoreError(f"Namespace '{name}' is not empty")
        del self._namespaces[name]

    async def list_tables(self, namespace: Optional[str] = None) -> List[TableDescriptor]:
        await asyncio.sleep(0)
        return [
            self._tables[name].descriptor.copy()
            for name in sorted(self._tables)
            if namespace is None or name.namespace == namespace
        ]

    async def get_table(self, table: TableLike) -> Optional[TableDescriptor]:
        await asyncio.sleep(0)
        data = self._tables.get(TableName.value_of(table))
        return data.descriptor.copy() if data else None

    async def create_table(self, descriptor: TableDescriptor) -> None:
        await asyncio.sleep(0)
        if descriptor.name.namespace not in self._namespaces:
            raise NamespaceNotFoundError(descriptor.name.namespace)
        if descriptor.name in self._tables:
            raise TableExistsError(str(descriptor.name))
        if not descriptor.families:
            raise StoreError(f"Table {descriptor.name} must have at least one column family")
        self._tables[descriptor.name] = _TableData(descriptor.copy())
        logger.debug(f"Created table {descriptor.name}")

    async def modify_table(self, descriptor: TableDescriptor) -> None:
        await asyncio.sleep(0)
        data = self._table_data(descriptor.name)
        data.descriptor = descriptor.copy()
        for row in list(data.rows):
            row_data = data.rows[row]
            for column in list(row_data):
                if column[0] not in descriptor.families:
                    del row_data[column]
            if not row_data:
                del data.rows[row]

    async def delete_table(self, table: TableLike) -> None:
        await asyncio.sleep(0)
        name = TableName.value_of(table)
        if name not in self._tables:
            raise TableNotFoundError(str(name))
        del self._tables[name]
        logger.debug(f"Deleted table {name}")

    async def truncate_table(self, table: TableLike) -> None:
        await asyncio.sleep(0)
        self._table_data(table).rows.clear()

    def create_multiplexer(self, queue_size: int = 10000) -> QueueingMultiplexer:
        multiplexer = QueueingMultiplexer(self, queue_size)
        self._multiplexers.append(multiplexer)
        return multiplexer

    async def close(self) -> None:
        for multiplexer in self._multiplexers:
            await multiplexer.close()
        self._multiplexers.clear()
