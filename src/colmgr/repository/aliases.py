"""
Column alias translation.

Families with aliasing enabled store a 4-byte big-endian positive integer in
place of each column qualifier. Mappings live in the aliases table: one row
per family, with ``q`` (qualifier -> alias) and ``a`` (alias -> qualifier)
families written together, and an allocation counter in ``c``.
"""

import logging
import struct
from typing import Dict, Optional, Tuple

from ..config import REPOSITORY_NAMESPACE
from ..exceptions import AliasingAlreadyInUseError, AliasNotFoundError, RepositoryError
from ..store.base import (
    ColumnStore,
    FamilyDescriptor,
    NamespaceDescriptor,
    Put,
    TableDescriptor,
    TableName,
)
from .entities import COLUMN_ALIAS, SchemaEntityType, column_path, family_path
from .ledger import ChangeLedger, entity_row_key


logger = logging.getLogger(__name__)

ALIAS_TABLE = TableName(REPOSITORY_NAMESPACE, "aliases")
QUALIFIER_FAMILY = "q"
ALIAS_FAMILY = "a"
COUNTER_FAMILY = "c"
COUNTER_QUALIFIER = b"next"

MAX_ALIAS = 2 ** 31 - 1
ALIAS_LENGTH = 4


def encode_alias(number: int) -> bytes:
    """Encode an alias number as 4 big-endian bytes with the top bit clear."""
    if not 0 < number <= MAX_ALIAS:
        raise ValueError(f"Alias out of range: {number}")
    return struct.pack(">i", number)


def decode_alias(raw: bytes) -> Optional[int]:
    """Alias number encoded in ``raw``, or None if it cannot be an alias."""
    if len(raw) != ALIAS_LENGTH:
        return None
    number = struct.unpack(">i", raw)[0]
    return number if number > 0 else None


def is_printable_qualifier(raw: bytes) -> bool:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return bool(text) and text.isprintable()


class AliasTranslator:
    """
    Allocates and resolves column aliases per (table, family).

    Allocation takes the next counter value with an atomic increment, then
    claims the qualifier with a compare-and-set on its ``q`` cell. A writer
    that loses the claim adopts the winner's alias, leaving its own number
    unused. Mappings are never removed or reassigned.
    """

    def __init__(self, store: ColumnStore, ledger: ChangeLedger):
        self.store = store
        self.ledger = ledger
        self._forward: Dict[Tuple[TableName, str], Dict[bytes, bytes]] = {}
        self._reverse: Dict[Tuple[TableName, str], Dict[bytes, bytes]] = {}

    @staticmethod
    def _row(table: TableName, family: str) -> bytes:
        return entity_row_key(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(table.namespace, table.qualifier, family),
        )

    def _remember(self, table: TableName, family: str, qualifier: bytes, alias: bytes) -> None:
        self._forward.setdefault((table, family), {})[qualifier] = alias
        self._reverse.setdefault((table, family), {})[alias] = qualifier

    async def install(self) -> bool:
        if not await self.store.namespace_exists(REPOSITORY_NAMESPACE):
            await self.store.create_namespace(NamespaceDescriptor(REPOSITORY_NAMESPACE))
        if await self.store.table_exists(ALIAS_TABLE):
            return False
        descriptor = TableDescriptor(ALIAS_TABLE)
        for family in (QUALIFIER_FAMILY, ALIAS_FAMILY, COUNTER_FAMILY):
            descriptor.add_family(FamilyDescriptor(family))
        await self.store.create_table(descriptor)
        logger.info(f"Created alias table {ALIAS_TABLE}")
        return True

    async def uninstall(self) -> None:
        if await self.store.table_exists(ALIAS_TABLE):
            await self.store.delete_table(ALIAS_TABLE)
            logger.info(f"Dropped alias table {ALIAS_TABLE}")
        self._forward.clear()
        self._reverse.clear()

    async def family_has_data(self, table: TableName, family: str) -> bool:
        """Cheap existence scan: does any row hold a cell in ``family``?"""
        async for _ in self.store.scan(table, families=[family], limit=1):
            return True
        return False

    async def enable(self, table: TableName, family: str, known_columns: int = 0) -> None:
        """
        Check that aliasing may be turned on for a family.

        Args:
            table: Table holding the family
            family: Column family name
            known_columns: Number of columns already audited in the family

        Raises:
            AliasingAlreadyInUseError: If the family already holds columns
        """
        if known_columns or await self.family_has_data(table, family):
            raise AliasingAlreadyInUseError(str(table), family)
        await self.load(table, family)

    async def load(self, table: TableName, family: str) -> int:
        """Prime the cache with every mapping of a family."""
        result = await self.store.get(
            ALIAS_TABLE, self._row(table, family), families=[QUALIFIER_FAMILY]
        )
        for cell in result.cells:
            self._remember(table, family, cell.qualifier, cell.value)
        return len(result.cells)

    async def find_alias(
        self, table: TableName, family: str, qualifier: bytes
    ) -> Optional[bytes]:
        """Existing alias of ``qualifier``, without allocating one."""
        cached = self._forward.get((table, family), {}).get(qualifier)
        if cached is not None:
            return cached
        result = await self.store.get(
            ALIAS_TABLE, self._row(table, family), columns=[(QUALIFIER_FAMILY, qualifier)]
        )
        alias = result.value(QUALIFIER_FAMILY, qualifier)
        if alias is not None:
            self._remember(table, family, qualifier, alias)
        return alias

    async def translate_for_write(
        self, table: TableName, family: str, qualifier: bytes
    ) -> bytes:
        """
        Alias for ``qualifier``, allocating one if the qualifier is new.

        A newly allocated mapping and its change event are persisted before
        the alias is returned.
        """
        alias = await self.find_alias(table, family, qualifier)
        if alias is not None:
            return alias

        row = self._row(table, family)
        number = await self.store.increment(
            ALIAS_TABLE, row, COUNTER_FAMILY, COUNTER_QUALIFIER
        )
        if number > MAX_ALIAS:
            raise RepositoryError(
                f"Alias space exhausted for {table} family '{family}'"
            )
        candidate = encode_alias(number)
        claim = (
            Put(row)
            .add_column(QUALIFIER_FAMILY, qualifier, candidate)
            .add_column(ALIAS_FAMILY, candidate, qualifier)
        )
        if await self.store.check_and_put(
            ALIAS_TABLE, row, QUALIFIER_FAMILY, qualifier, None, claim
        ):
            alias = candidate
            await self.ledger.record(
                SchemaEntityType.COLUMN_AUDITOR,
                column_path(table.namespace, table.qualifier, family, qualifier),
                COLUMN_ALIAS,
                str(number),
            )
            logger.debug(f"Assigned alias {number} to {qualifier!r} in {table}:{family}")
        else:
            winner = await self.store.get(
                ALIAS_TABLE, row, columns=[(QUALIFIER_FAMILY, qualifier)]
            )
            alias = winner.value(QUALIFIER_FAMILY, qualifier)
            if alias is None:
                raise RepositoryError(
                    f"Alias claim for {qualifier!r} in {table}:{family} lost "
                    f"but no winning alias was found"
                )
            logger.debug(f"Alias {number} unused; {qualifier!r} already mapped")

        self._remember(table, family, qualifier, alias)
        return alias

    async def translate_for_read(self, table: TableName, family: str, raw: bytes) -> bytes:
        """
        Qualifier stored under ``raw``.

        A known alias resolves to its qualifier; any other printable key is
        taken as a plain qualifier.

        Raises:
            AliasNotFoundError: If ``raw`` is neither
        """
        cached = self._reverse.get((table, family), {}).get(raw)
        if cached is not None:
            return cached

        if decode_alias(raw) is not None:
            result = await self.store.get(
                ALIAS_TABLE, self._row(table, family), columns=[(ALIAS_FAMILY, raw)]
            )
            qualifier = result.value(ALIAS_FAMILY, raw)
            if qualifier is not None:
                self._remember(table, family, qualifier, raw)
                return qualifier

        if is_printable_qualifier(raw):
            return raw
        raise AliasNotFoundError(str(table), family, raw)
