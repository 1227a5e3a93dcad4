"""
Write interceptor for governed stores.

GovernedColumnStore wraps any ColumnStore behind the same interface. Writes to
included tables pass through validation, alias translation and auditing;
everything else reaches the wrapped store untouched.
"""

import logging
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Tuple, Union

from .exceptions import AuditBookkeepingError, ColmgrError
from .repository.repository import Repository
from .store.base import (
    ColumnStore,
    NamespaceDescriptor,
    Put,
    RowResult,
    TableDescriptor,
    TableLike,
    TableName,
    WriteMultiplexer,
    encode_long,
)


logger = logging.getLogger(__name__)


class GovernedColumnStore(ColumnStore):
    """
    ColumnStore decorator applying column governance.

    Per governed write:
    1. inclusion check (excluded tables are delegated unmodified)
    2. enforcement, aborting the whole call on the first violation
    3. alias translation for aliased families
    4. delegation to the wrapped store
    5. audit bookkeeping, only after the store accepted the write

    A failure in step 5 is logged and raised as AuditBookkeepingError even
    though the data itself was written.
    """

    def __init__(self, store: ColumnStore, repository: Repository):
        self.store = store
        self.repository = repository

    def _governed(self, table: TableLike) -> Optional[TableName]:
        name = TableName.value_of(table)
        return name if self.repository.is_included_table(name) else None

    async def _bookkeeping(self, name: TableLike, coro) -> None:
        try:
            await coro
        except ColmgrError as e:
            logger.error(f"Audit bookkeeping failed for {name}: {e}")
            raise AuditBookkeepingError(str(name), e) from e

    # Data operations

    async def put(self, table: TableLike, puts: Union[Put, Sequence[Put]]) -> None:
        puts = [puts] if isinstance(puts, Put) else list(puts)
        name = self._governed(table)
        if name is None:
            await self.store.put(table, puts)
            return

        for put in puts:
            self.repository.validate_put(name, put)
        aliased = [await self.repository.alias_put(name, put) for put in puts]
        await self.store.put(name, aliased)
        for put in puts:
            await self._bookkeeping(name, self.repository.audit_put(name, put))

    async def _translate_columns(
        self, name: TableName, columns: Optional[Iterable[Tuple[str, bytes]]]
    ) -> Optional[List[Tuple[str, bytes]]]:
        if columns is None:
            return None
        translated = []
        for family, qualifier in columns:
            if self.repository.aliases_enabled(name, family):
                alias = await self.repository.alias_for_read(name, family, qualifier)
                if alias is None:
                    # never written, so nothing can be stored under it
                    continue
                qualifier = alias
            translated.append((family, qualifier))
        return translated

    async def get(
        self,
        table: TableLike,
        row: bytes,
        families: Optional[Iterable[str]] = None,
        columns: Optional[Iterable[Tuple[str, bytes]]] = None,
        max_versions: int = 1,
    ) -> RowResult:
        name = self._governed(table)
        if name is None:
            return await self.store.get(table, row, families, columns, max_versions)

        families = list(families) if families is not None else None
        translated = await self._translate_columns(name, columns)
        if translated is not None and not translated and not families:
            return RowResult(row)
        result = await self.store.get(name, row, families, translated, max_versions)
        return await self.repository.decode_result(name, result)

    async def scan(
        self,
        table: TableLike,
        families: Optional[Iterable[str]] = None,
        start_row: Optional[bytes] = None,
        stop_row: Optional[bytes] = None,
        max_versions: int = 1,
        limit: Optional[int] = None,
    ) -> AsyncIterator[RowResult]:
        name = self._governed(table)
        async for result in self.store.scan(
            table, families, start_row, stop_row, max_versions, limit
        ):
            if name is not None:
                result = await self.repository.decode_result(name, result)
            yield result

    async def delete(
        self,
        table: TableLike,
        row: bytes,
        family: Optional[str] = None,
        qualifier: Optional[bytes] = None,
    ) -> None:
        name = self._governed(table)
        if (
            name is not None
            and family is not None
            and qualifier is not None
            and self.repository.aliases_enabled(name, family)
        ):
            qualifier = await self.repository.alias_for_read(name, family, qualifier)
            if qualifier is None:
                return
        await self.store.delete(table, row, family, qualifier)

    async def increment(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        amount: int = 1,
    ) -> int:
        name = self._governed(table)
        if name is None:
            return await self.store.increment(table, row, family, qualifier, amount)

        # counter cells are binary, so only the definition-exists rule applies
        counter_cell = Put(row).add_column(family, qualifier, b"")
        self.repository.validate_columns_defined(name, counter_cell)
        stored_qualifier = qualifier
        if self.repository.aliases_enabled(name, family):
            stored_qualifier = await self.repository.alias_for_write(name, family, qualifier)
        total = await self.store.increment(name, row, family, stored_qualifier, amount)
        audited = Put(row).add_column(family, qualifier, encode_long(total))
        await self._bookkeeping(name, self.repository.audit_put(name, audited))
        return total

    async def check_and_put(
        self,
        table: TableLike,
        row: bytes,
        family: str,
        qualifier: bytes,
        expected: Optional[bytes],
        put: Put,
    ) -> bool:
        name = self._governed(table)
        if name is None:
            return await self.store.check_and_put(table, row, family, qualifier, expected, put)

        self.repository.validate_put(name, put)
        check_qualifier = qualifier
        if self.repository.aliases_enabled(name, family):
            check_qualifier = await self.repository.alias_for_write(name, family, qualifier)
        aliased = await self.repository.alias_put(name, put)
        applied = await self.store.check_and_put(
            name, row, family, check_qualifier, expected, aliased
        )
        if applied:
            await self._bookkeeping(name, self.repository.audit_put(name, put))
        return applied

    # Administrative operations

    async def list_namespaces(self) -> List[NamespaceDescriptor]:
        return await self.store.list_namespaces()

    async def get_namespace(self, name: str) -> Optional[NamespaceDescriptor]:
        return await self.store.get_namespace(name)

    async def create_namespace(self, descriptor: NamespaceDescriptor) -> None:
        await self.store.create_namespace(descriptor)
        await self._bookkeeping(descriptor.name, self.repository.record_namespace(descriptor))

    async def modify_namespace(self, descriptor: NamespaceDescriptor) -> None:
        await self.store.modify_namespace(descriptor)
        await self._bookkeeping(descriptor.name, self.repository.record_namespace(descriptor))

    async def delete_namespace(self, name: str) -> None:
        await self.store.delete_namespace(name)
        await self._bookkeeping(name, self.repository.record_namespace_deleted(name))

    async def list_tables(self, namespace: Optional[str] = None) -> List[TableDescriptor]:
        return await self.store.list_tables(namespace)

    async def get_table(self, table: TableLike) -> Optional[TableDescriptor]:
        return await self.store.get_table(table)

    async def _record_live_table(self, name: TableName) -> None:
        descriptor = await self.store.get_table(name)
        if descriptor is not None:
            await self.repository.record_table(descriptor)

    async def create_table(self, descriptor: TableDescriptor) -> None:
        await self.store.create_table(descriptor)
        name = self._governed(descriptor.name)
        if name is not None:
            await self._bookkeeping(name, self._record_live_table(name))

    async def modify_table(self, descriptor: TableDescriptor) -> None:
        await self.store.modify_table(descriptor)
        name = self._governed(descriptor.name)
        if name is not None:
            await self._bookkeeping(name, self._record_live_table(name))

    async def delete_table(self, table: TableLike) -> None:
        await self.store.delete_table(table)
        name = self._governed(table)
        if name is not None:
            await self._bookkeeping(name, self.repository.record_table_deleted(name))

    async def truncate_table(self, table: TableLike) -> None:
        await self.store.truncate_table(table)

    def create_multiplexer(self, queue_size: Optional[int] = None) -> WriteMultiplexer:
        """Governed multiplexer; the queue size defaults to the configured one."""
        queue_size = queue_size or self.repository.config.multiplexer_queue_size
        return GovernedMultiplexer(self.store.create_multiplexer(queue_size), self.repository)

    async def close(self) -> None:
        await self.store.close()


class GovernedMultiplexer(WriteMultiplexer):
    """
    Governed front for a buffered multiplexer.

    Nothing here raises for a single put: rejections, alias failures and
    audit failures are logged and reported as "not queued".
    """

    def __init__(self, multiplexer: WriteMultiplexer, repository: Repository):
        self.multiplexer = multiplexer
        self.repository = repository

    async def put(self, table: TableLike, put: Put, retry: int = 0) -> bool:
        name = TableName.value_of(table)
        if not self.repository.is_included_table(name):
            return await self.multiplexer.put(name, put, retry)

        try:
            self.repository.validate_put(name, put)
            aliased = await self.repository.alias_put(name, put)
        except ColmgrError as e:
            logger.warning(f"Put to {name} not queued: {e}")
            return False

        if not await self.multiplexer.put(name, aliased, retry):
            return False

        try:
            await self.repository.audit_put(name, put)
        except ColmgrError as e:
            logger.error(f"Audit bookkeeping failed for {name}: {e}")
            return False
        return True

    async def flush(self) -> None:
        await self.multiplexer.flush()

    async def close(self) -> None:
        await self.multiplexer.close()
