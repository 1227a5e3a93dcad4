"""
Redis-backed ColumnStore.

Layout (every key starts with the configured prefix):

- ``{p}:namespaces``  hash  namespace -> configuration JSON
- ``{p}:tables``      hash  ``ns:table`` -> descriptor JSON
- ``{p}:rows:{t}``    zset  row keys (hex, score 0) for ZRANGEBYLEX ordering
- ``{p}:cols:{t}:{r}`` set  ``family:qualifier`` (hex) present in a row
- ``{p}:cell:{t}:{r}:{f}:{q}`` zset  versions, score = timestamp,
  member = 8-byte timestamp + value

Table names, rows, families and qualifiers are hex-encoded inside keys. Row
writes go through MULTI pipelines; increment and check_and_put run as
WATCH/MULTI optimistic transactions on the checked cell.
"""

import json
import logging
from contextlib import contextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..config import DEFAULT_NAMESPACE, RedisStoreConfig
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
    FamilyDescriptor,
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


@contextmanager
def _redis_errors(operation: str):
    """Re-raise Redis client failures as StoreError."""
    try:
        yield
    except RedisError as e:
        raise StoreError(f"Redis {operation} failed: {e}", cause=e) from e


def _column_member(family: str, qualifier: bytes) -> str:
    return f"{family.encode('utf-8').hex()}:{qualifier.hex()}"


def _parse_column_member(member: Union[bytes, str]) -> Tuple[str, bytes]:
    if isinstance(member, bytes):
        member = member.decode("ascii")
    family_hex, _, qualifier_hex = member.partition(":")
    return bytes.fromhex(family_hex).decode("utf-8"), bytes.fromhex(qualifier_hex)


def _table_to_json(descriptor: TableDescriptor) -> str:
    return json.dumps(
        {
            "name": str(descriptor.name),
            "values": descriptor.values,
            "configuration": descriptor.configuration,
            "families": [
                {
                    "name": family.name,
                    "values": family.values,
                    "configuration": family.configuration,
                }
                for family in descriptor.families.values()
            ],
        },
        sort_keys=True,
    )


def _table_from_json(raw: Union[bytes, str]) -> TableDescriptor:
    data = json.loads(raw)
    descriptor = TableDescriptor(
        TableName.value_of(data["name"]),
        values=data.get("values", {}),
        configuration=data.get("configuration", {}),
    )
    for family in data.get("families", []):
        descriptor.add_family(
            FamilyDescriptor(
                family["name"],
                values=family.get("values", {}),
                configuration=family.get("configuration", {}),
            )
        )
    return descriptor


class RedisColumnStore(ColumnStore):
    """Persistent wide-column store kept in Redis."""

    def __init__(self, client: redis.Redis, key_prefix: str = "colmgr"):
        self.client = client
        self.key_prefix = key_prefix
        self._pool: Optional[redis.ConnectionPool] = None
        self._default_namespace_ready = False
        self._multiplexers: List[QueueingMultiplexer] = []

    @classmethod
    async def connect(cls, config: Optional[RedisStoreConfig] = None) -> "RedisColumnStore":
        """Open a connection pool and verify the server answers."""
        config = config or RedisStoreConfig()
        pool = redis.ConnectionPool(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            decode_responses=False,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except RedisError as e:
            await pool.disconnect()
            raise StoreError(f"Failed to connect to Redis: {e}", cause=e) from e

        logger.info(f"Connected to Redis at {config.host}:{config.port}/{config.db}")
        store = cls(client, config.key_prefix)
        store._pool = pool
        return store

    # Keys

    def _key(self, *parts: str) -> str:
        return ":".join((self.key_prefix,) + parts)

    @property
    def _namespaces_key(self) -> str:
        return self._key("namespaces")

    @property
    def _tables_key(self) -> str:
        return self._key("tables")

    def _rows_key(self, name: TableName) -> str:
        return self._key("rows", str(name).encode("utf-8").hex())

    def _cols_key(self, name: TableName, row: bytes) -> str:
        return self._key("cols", str(name).encode("utf-8").hex(), row.hex())

    def _cell_key(self, name: TableName, row: bytes, family: str, qualifier: bytes) -> str:
        return self._key(
            "cell",
            str(name).encode("utf-8").hex(),
            row.hex(),
            family.encode("utf-8").hex(),
            qualifier.hex(),
        )

    # Helpers

    async def _require_table(self, name: TableName) -> TableDescriptor:
        with _redis_errors("get_table"):
            raw = await self.client.hget(self._tables_key, str(name))
        if raw is None:
            raise TableNotFoundError(str(name))
        return _table_from_json(raw)

    @staticmethod
    def _require_family(descriptor: TableDescriptor, family: str) -> FamilyDescriptor:
        family_descriptor = descriptor.get_family(family)
        if family_descriptor is None:
            raise StoreError(
                f"Column family '{family}' does not exist in table {descriptor.name}"
            )
        return family_descriptor

    def _queue_cell(
        self,
        pipe,
        name: TableName,
        row: bytes,
        family: FamilyDescriptor,
        qualifier: bytes,
        value: bytes,
        timestamp: int,
    ) -> None:
        key = self._cell_key(name, row, family.name, qualifier)
        pipe.zadd(self._rows_key(name), {row.hex(): 0})
        pipe.sadd(self._cols_key(name, row), _column_member(family.name, qualifier))
        pipe.zremrangebyscore(key, timestamp, timestamp)
        pipe.zadd(key, {encode_long(timestamp) + value: timestamp})
        pipe.zremrangebyrank(key, 0, -(family.max_versions + 1))

    def _queue_put(
        self, pipe, name: TableName, descriptor: TableDescriptor, put: Put, now: int
    ) -> None:
        for cell in put.cells:
            self._queue_cell(
                pipe,
                name,
                put.row,
                self._require_family(descriptor, cell.family),
                cell.qualifier,
                cell.value,
                cell.timestamp if cell.timestamp is not None else now,
            )

    async def _read_row(
        self,
        name: TableName,
        row: bytes,
        families: Optional[Iterable[str]],
        columns: Optional[Iterable[Tuple[str, bytes]]],
        max_versions: int,
    ) -> RowResult:
        family_filter = set(families) if families is not None else None
        column_filter = set(columns) if columns is not None else None

        selected = []
        for member in await self.client.smembers(self._cols_key(name, row)):
            column = _parse_column_member(member)
            if family_filter is None and column_filter is None:
                selected.append(column)
            elif (family_filter and column[0] in family_filter) or (
                column_filter and column in column_filter
            ):
                selected.append(column)
        if not selected:
            return RowResult(row)
        selected.sort()

        async with self.client.pipeline(transaction=False) as pipe:
            for family, qualifier in selected:
                pipe.zrevrange(
                    self._cell_key(name, row, family, qualifier), 0, max_versions - 1
                )
            responses = await pipe.execute()

        cells = []
        for (family, qualifier), versions in zip(selected, responses):
            for member in versions:
                cells.append(Cell(family, qualifier, member[8:], decode_long(member[:8])))
        return RowResult(row, cells)

    async def _delete_row_columns(
        self, name: TableName, row: bytes, families: Optional[Iterable[str]] = None,
        qualifier: Optional[bytes] = None,
    ) -> None:
        family_filter = set(families) if families is not None else None
        cols_key = self._cols_key(name, row)
        members = await self.client.smembers(cols_key)
        doomed = []
        for member in members:
            family, column_qualifier = _parse_column_member(member)
            if family_filter is not None and family not in family_filter:
                continue
            if qualifier is not None and column_qualifier != qualifier:
                continue
            doomed.append((member, family, column_qualifier))
        if not doomed:
            return

        async with self.client.pipeline(transaction=True) as pipe:
            for member, family, column_qualifier in doomed:
                pipe.delete(self._cell_key(name, row, family, column_qualifier))
                pipe.srem(cols_key, member)
            if len(doomed) == len(members):
                pipe.delete(cols_key)
                pipe.zrem(self._rows_key(name), row.hex())
            await pipe.execute()

    async def _delete_rows(
        self, name: TableName, families: Optional[Iterable[str]] = None
    ) -> None:
        families = list(families) if families is not None else None
        for row_id in await self.client.zrange(self._rows_key(name), 0, -1):
            row = bytes.fromhex(row_id.decode("ascii"))
            await self._delete_row_columns(name, row, families)
        if families is None:
            await self.client.delete(self._rows_key(name))

    async def _ensure_default_namespace(self) -> None:
        if not self._default_namespace_ready:
            await self.client.hsetnx(self._namespaces_key, DEFAULT_NAMESPACE, "{}")
            self._default_namespace_ready = True

    # Data operations

    async def put(self, table: TableLike, puts: Union[Put, Sequence[Put]]) -> None:
        name = TableName.value_of(table)
        descriptor = await self._require_table(name)
        if isinstance(puts, Put):
            puts = [puts]
        for put in puts:
            for family in put.families:
                self._require_family(descriptor, family)

        now = current_millis()
        with _redis_errors("put"):
            async with self.client.pipeline(transaction=True) as pipe:
                for put in puts:
                    self._queue_put(pipe, name, descriptor, put, now)
                await pipe.execute()

    async def get(
        self,
        table: TableLike,
        row: bytes,
        families: Optional[Iterable[str]] = None,
        columns: Optional[Iterable[Tuple[str, bytes]]] = None,
        max_versions: int = 1,
    ) -> RowResult:
        name = TableName.value_of(table)
        await self._require_table(name)
        with _redis_errors("get"):
            return await self._read_row(name, row, families, columns, max_versions)

    async def scan(
        self,
        table: TableLike,
        families: Optional[Iterable[str]] = None,
        start_row: Optional[bytes] = None,
        stop_row: Optional[bytes] = None,
        max_versions: int = 1,
        limit: Optional[int] = None,
    ) -> AsyncIterator[RowResult]:
        name = TableName.value_of(table)
        await self._require_table(name)
        families = list(families) if families is not None else None
        lower = b"[" + start_row.hex().encode("ascii") if start_row else b"-"
        upper = b"(" + stop_row.hex().encode("ascii") if stop_row else b"+"

        with _redis_errors("scan"):
            row_ids = await self.client.zrangebylex(self._rows_key(name), lower, upper)

        returned = 0
        for row_id in row_ids:
            row = bytes.fromhex(row_id.decode("ascii"))
            with _redis_errors("scan"):
                result = await self._read_row(name, row, families, None, max_versions)
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
        name = TableName.value_of(table)
        await self._require_table(name)
        with _redis_errors("delete"):
            await self._delete_row_columns(
                name, row, [family] if family is not None else None, qualifier
            )

    async def increment(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        amount: int = 1,
    ) -> int:
        name = TableName.value_of(table)
        family_descriptor = self._require_family(await self._require_table(name), family)
        key = self._cell_key(name, row, family, qualifier)

        async def apply(pipe) -> int:
            latest = await pipe.zrevrange(key, 0, 0)
            new_value = (decode_long(latest[0][8:]) if latest else 0) + amount
            pipe.multi()
            self._queue_cell(
                pipe, name, row, family_descriptor, qualifier,
                encode_long(new_value), current_millis(),
            )
            return new_value

        with _redis_errors("increment"):
            return await self.client.transaction(apply, key, value_from_callable=True)

    async def check_and_put(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        expected: Optional[bytes],
        put: Put,
    ) -> bool:
        if put.row != row:
            raise StoreError("check_and_put requires the put to target the checked row")
        name = TableName.value_of(table)
        descriptor = await self._require_table(name)
        self._require_family(descriptor, family)
        for put_family in put.families:
            self._require_family(descriptor, put_family)
        key = self._cell_key(name, row, family, qualifier)

        async def apply(pipe) -> bool:
            latest = await pipe.zrevrange(key, 0, 0)
            current = latest[0][8:] if latest else None
            if current != expected:
                return False
            pipe.multi()
            self._queue_put(pipe, name, descriptor, put, current_millis())
            return True

        with _redis_errors("check_and_put"):
            return await self.client.transaction(apply, key, value_from_callable=True)

    # Administrative operations

    async def list_namespaces(self) -> List[NamespaceDescriptor]:
        with _redis_errors("list_namespaces"):
            await self._ensure_default_namespace()
            raw = await self.client.hgetall(self._namespaces_key)
        return sorted(
            (
                NamespaceDescriptor(name.decode("utf-8"), json.loads(config))
                for name, config in raw.items()
            ),
            key=lambda ns: ns.name,
        )

    async def get_namespace(self, name: str) -> Optional[NamespaceDescriptor]:
        with _redis_errors("get_namespace"):
            await self._ensure_default_namespace()
            raw = await self.client.hget(self._namespaces_key, name)
        return NamespaceDescriptor(name, json.loads(raw)) if raw is not None else None

    async def create_namespace(self, descriptor: NamespaceDescriptor) -> None:
        with _redis_errors("create_namespace"):
            await self._ensure_default_namespace()
            created = await self.client.hsetnx(
                self._namespaces_key, descriptor.name, json.dumps(descriptor.configuration)
            )
        if not created:
            raise NamespaceExistsError(descriptor.name)

    async def modify_namespace(self, descriptor: NamespaceDescriptor) -> None:
        if not await self.namespace_exists(descriptor.name):
            raise NamespaceNotFoundError(descriptor.name)
        with _redis_errors("modify_namespace"):
            await self.client.hset(
                self._namespaces_key, descriptor.name, json.dumps(descriptor.configuration)
            )

    async def delete_namespace(self, name: str) -> None:
        if not await self.namespace_exists(name):
            raise NamespaceNotFoundError(name)
        if await self.list_tables(name):
            raise StoreError(f"Namespace '{name}' is not empty")
        with _redis_errors("delete_namespace"):
            await self.client.hdel(self._namespaces_key, name)

    async def list_tables(self, namespace: Optional[str] = None) -> List[TableDescriptor]:
        with _redis_errors("list_tables"):
            raw = await self.client.hgetall(self._tables_key)
        descriptors = [_table_from_json(value) for value in raw.values()]
        return sorted(
            (d for d in descriptors if namespace is None or d.name.namespace == namespace),
            key=lambda d: d.name,
        )

    async def get_table(self, table: TableLike) -> Optional[TableDescriptor]:
        with _redis_errors("get_table"):
            raw = await self.client.hget(self._tables_key, str(TableName.value_of(table)))
        return _table_from_json(raw) if raw is not None else None

    async def create_table(self, descriptor: TableDescriptor) -> None:
        if not await self.namespace_exists(descriptor.name.namespace):
            raise NamespaceNotFoundError(descriptor.name.namespace)
        if not descriptor.families:
            raise StoreError(f"Table {descriptor.name} must have at least one column family")
        with _redis_errors("create_table"):
            created = await self.client.hsetnx(
                self._tables_key, str(descriptor.name), _table_to_json(descriptor)
            )
        if not created:
            raise TableExistsError(str(descriptor.name))
        logger.debug(f"Created table {descriptor.name}")

    async def modify_table(self, descriptor: TableDescriptor) -> None:
        current = await self._require_table(descriptor.name)
        dropped = [f for f in current.family_names if f not in descriptor.families]
        with _redis_errors("modify_table"):
            await self.client.hset(
                self._tables_key, str(descriptor.name), _table_to_json(descriptor)
            )
            if dropped:
                await self._delete_rows(descriptor.name, dropped)

    async def delete_table(self, table: TableLike) -> None:
        name = TableName.value_of(table)
        await self._require_table(name)
        with _redis_errors("delete_table"):
            await self._delete_rows(name)
            await self.client.hdel(self._tables_key, str(name))
        logger.debug(f"Deleted table {name}")

    async def truncate_table(self, table: TableLike) -> None:
        name = TableName.value_of(table)
        await self._require_table(name)
        with _redis_errors("truncate_table"):
            await self._delete_rows(name)

    def create_multiplexer(self, queue_size: int = 10000) -> QueueingMultiplexer:
        multiplexer = QueueingMultiplexer(self, queue_size)
        self._multiplexers.append(multiplexer)
        return multiplexer

    async def close(self) -> None:
        for multiplexer in self._multiplexers:
            await multiplexer.close()
        self._multiplexers.clear()

        await self.client.aclose()
        if self._pool is not None:
            try:
                await self._pool.disconnect()
                logger.debug("Closed Redis connection pool")
            except RedisError as e:
                logger.warning(f"Error closing Redis pool: {e}")
