"""
Read-only queries over the change ledger.
"""

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..config import GovernanceConfig, WILDCARD
from ..exceptions import TableNotIncludedError
from ..store.base import TableLike, TableName
from .entities import (
    SchemaEntityType,
    column_path,
    family_path,
    ledger_attribute_name,
    namespace_path,
    table_path,
)
from .ledger import ChangeEvent, ChangeLedger


logger = logging.getLogger(__name__)

CSV_HEADER = [
    "timestamp",
    "time",
    "user_name",
    "entity_type",
    "namespace",
    "table",
    "column_family",
    "column_qualifier",
    "attribute_name",
    "attribute_value",
]


class ChangeEventMonitor:
    """
    Queries recorded ChangeEvents by entity, user and time.

    Every result list is ordered by timestamp unless stated otherwise.
    """

    def __init__(self, ledger: ChangeLedger, config: GovernanceConfig):
        self.ledger = ledger
        self.config = config

    def _included_table(self, table: TableLike) -> TableName:
        name = TableName.value_of(table)
        if not self.config.is_included_table(name):
            raise TableNotIncludedError(str(name))
        return name

    async def get_all_change_events(self) -> List[ChangeEvent]:
        return await self.ledger.events()

    async def get_all_change_events_by_user_name(self) -> List[ChangeEvent]:
        """Every event, grouped by user name, each group in timestamp order."""
        events = await self.ledger.events()
        return sorted(events, key=lambda e: (e.user_name, e.sort_key()))

    async def get_change_events_for_user_name(self, user_name: str) -> List[ChangeEvent]:
        return [e for e in await self.ledger.events() if e.user_name == user_name]

    async def get_change_events_between(self, start_ms: int, end_ms: int) -> List[ChangeEvent]:
        """Events with start_ms <= timestamp < end_ms."""
        return [e for e in await self.ledger.events() if start_ms <= e.timestamp < end_ms]

    async def get_change_events_for_namespace(
        self, namespace: str, include_children: bool = False
    ) -> List[ChangeEvent]:
        if not self.config.is_included_namespace(namespace):
            raise TableNotIncludedError(f"{namespace}:{WILDCARD}")
        return await self.ledger.events(
            SchemaEntityType.NAMESPACE, namespace_path(namespace), include_children
        )

    async def get_change_events_for_table(
        self, table: TableLike, include_children: bool = False
    ) -> List[ChangeEvent]:
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.TABLE, table_path(name.namespace, name.qualifier), include_children
        )

    async def get_change_events_for_column_family(
        self, table: TableLike, family: str, include_children: bool = False
    ) -> List[ChangeEvent]:
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            include_children,
        )

    async def get_change_events_for_column_auditor(
        self, table: TableLike, family: str, qualifier: bytes
    ) -> List[ChangeEvent]:
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.COLUMN_AUDITOR,
            column_path(name.namespace, name.qualifier, family, qualifier),
        )

    async def get_change_events_for_column_definition(
        self, table: TableLike, family: str, qualifier: bytes
    ) -> List[ChangeEvent]:
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.COLUMN_DEFINITION,
            column_path(name.namespace, name.qualifier, family, qualifier),
        )

    async def get_change_events_for_table_attribute(
        self, table: TableLike, attribute: str, configuration: bool = False
    ) -> List[ChangeEvent]:
        """
        History of one table attribute.

        Args:
            table: Table name
            attribute: Descriptor value key, configuration key, or an engine
                attribute such as ``_Status``
            configuration: True when ``attribute`` is a configuration key
        """
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.TABLE,
            table_path(name.namespace, name.qualifier),
            attribute_name=ledger_attribute_name(attribute, configuration),
        )

    async def get_change_events_for_column_family_attribute(
        self, table: TableLike, family: str, attribute: str, configuration: bool = False
    ) -> List[ChangeEvent]:
        name = self._included_table(table)
        return await self.ledger.events(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            attribute_name=ledger_attribute_name(attribute, configuration),
        )

    @staticmethod
    def export_change_events_to_csv(
        events: Iterable[ChangeEvent], path: Union[str, Path]
    ) -> int:
        """
        Write events to a CSV file with a header row.

        Returns:
            Number of events written
        """
        count = 0
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADER)
            for event in events:
                writer.writerow(
                    [
                        event.timestamp,
                        datetime.fromtimestamp(event.timestamp / 1000, tz=timezone.utc).isoformat(),
                        event.user_name,
                        event.entity_type.value,
                        event.namespace,
                        _text(event.table),
                        _text(event.column_family),
                        _text(event.column_qualifier),
                        event.attribute_name,
                        _text(event.attribute_value),
                    ]
                )
                count += 1
        logger.info(f"Exported {count} change events to {path}")
        return count


def _text(value: Optional[str]) -> str:
    if value is None:
        return ""
    # qualifiers may carry undecodable bytes
    return value.encode("utf-8", "backslashreplace").decode("utf-8")
