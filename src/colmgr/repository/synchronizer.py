"""
Synchronization check between the entity model and the live store.

Runs once when a governed session opens. Namespaces, tables and families the
model knows about are compared with what the store actually holds, and every
difference is logged as a warning. Neither side is modified.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..config import GovernanceConfig
from ..store.base import ColumnStore, TableName
from .entities import EntityModel, SchemaEntity, SchemaEntityType


logger = logging.getLogger(__name__)

NAMESPACE_NOT_FOUND_SYNC_MSG = "Namespace not found in store: "
TABLE_NOT_FOUND_SYNC_MSG = "Table not found in store: "
FAMILY_NOT_FOUND_SYNC_MSG = "Column family not found in store: "
TABLE_ATTRIBUTE_SYNC_MSG = "Table attribute out of sync with store: "
FAMILY_ATTRIBUTE_SYNC_MSG = "Column family attribute out of sync with store: "


class SyncDiscrepancyKind(str, Enum):
    """Kinds of drift the synchronizer reports."""

    NAMESPACE_NOT_FOUND = "namespace_not_found"
    TABLE_NOT_FOUND = "table_not_found"
    FAMILY_NOT_FOUND = "family_not_found"
    TABLE_ATTRIBUTE_OUT_OF_SYNC = "table_attribute_out_of_sync"
    FAMILY_ATTRIBUTE_OUT_OF_SYNC = "family_attribute_out_of_sync"


_MESSAGE_PREFIXES = {
    SyncDiscrepancyKind.NAMESPACE_NOT_FOUND: NAMESPACE_NOT_FOUND_SYNC_MSG,
    SyncDiscrepancyKind.TABLE_NOT_FOUND: TABLE_NOT_FOUND_SYNC_MSG,
    SyncDiscrepancyKind.FAMILY_NOT_FOUND: FAMILY_NOT_FOUND_SYNC_MSG,
    SyncDiscrepancyKind.TABLE_ATTRIBUTE_OUT_OF_SYNC: TABLE_ATTRIBUTE_SYNC_MSG,
    SyncDiscrepancyKind.FAMILY_ATTRIBUTE_OUT_OF_SYNC: FAMILY_ATTRIBUTE_SYNC_MSG,
}


@dataclass
class SyncDiscrepancy:
    """One detected difference between model and store."""

    kind: SyncDiscrepancyKind
    namespace: str
    table: Optional[str] = None
    family: Optional[str] = None
    attribute: Optional[str] = None
    model_value: Optional[str] = None
    store_value: Optional[str] = None

    @property
    def message(self) -> str:
        subject = self.namespace
        if self.table is not None:
            subject = f"{self.namespace}:{self.table}"
        if self.family is not None:
            subject += f" family '{self.family}'"
        if self.attribute is not None:
            subject += (
                f" attribute '{self.attribute}' "
                f"(repository: {self.model_value!r}, store: {self.store_value!r})"
            )
        return _MESSAGE_PREFIXES[self.kind] + subject


@dataclass
class SyncReport:
    """Result of one synchronization check."""

    discrepancies: List[SyncDiscrepancy] = field(default_factory=list)
    namespaces_checked: int = 0
    tables_checked: int = 0
    execution_time_ms: float = 0.0

    @property
    def in_sync(self) -> bool:
        return not self.discrepancies

    def of_kind(self, kind: SyncDiscrepancyKind) -> List[SyncDiscrepancy]:
        return [d for d in self.discrepancies if d.kind == kind]


def _descriptor_attributes(entity: SchemaEntity) -> Dict[str, Dict[str, str]]:
    """Descriptor-mirroring attributes of an entity (engine attributes excluded)."""
    return {
        "values": {k: v for k, v in entity.values.items() if not k.startswith("_")},
        "configuration": dict(entity.configuration),
    }


def _diff(
    model_attributes: Dict[str, Dict[str, str]],
    values: Dict[str, str],
    configuration: Dict[str, str],
) -> List[tuple]:
    """(attribute label, model value, store value) for each differing key."""
    differences = []
    for section, live in (("values", values), ("configuration", configuration)):
        recorded = model_attributes[section]
        for key in sorted(set(recorded) | set(live)):
            if recorded.get(key) != live.get(key):
                label = key if section == "values" else f"configuration:{key}"
                differences.append((label, recorded.get(key), live.get(key)))
    return differences


class Synchronizer:
    """Compares the cached entity model with live store metadata."""

    def __init__(self, store: ColumnStore, config: GovernanceConfig):
        self.store = store
        self.config = config

    def _report(self, report: SyncReport, discrepancy: SyncDiscrepancy) -> None:
        report.discrepancies.append(discrepancy)
        logger.warning(discrepancy.message)

    async def check(self, model: EntityModel) -> SyncReport:
        """
        Run the synchronization check.

        Args:
            model: Entity model to compare against the store

        Returns:
            SyncReport listing every discrepancy found
        """
        start = time.monotonic()
        report = SyncReport()

        for ns_path, namespace in model.children(None, ()):
            if namespace.is_deleted or not self.config.is_included_namespace(namespace.name):
                continue
            report.namespaces_checked += 1
            if await self.store.get_namespace(namespace.name) is None:
                self._report(
                    report,
                    SyncDiscrepancy(SyncDiscrepancyKind.NAMESPACE_NOT_FOUND, namespace.name),
                )
                continue

            for table_path, table in model.children(SchemaEntityType.NAMESPACE, ns_path):
                table_name = TableName(namespace.name, table.name)
                if table.is_deleted or not self.config.is_included_table(table_name):
                    continue
                report.tables_checked += 1
                await self._check_table(report, model, table_path, table, table_name)

        report.execution_time_ms = (time.monotonic() - start) * 1000
        if report.in_sync:
            logger.info(
                f"Repository in sync with store ({report.tables_checked} tables checked)"
            )
        else:
            logger.info(
                f"Synchronization check found {len(report.discrepancies)} discrepancies"
            )
        return report

    async def _check_table(
        self,
        report: SyncReport,
        model: EntityModel,
        table_path,
        table: SchemaEntity,
        table_name: TableName,
    ) -> None:
        descriptor = await self.store.get_table(table_name)
        if descriptor is None:
            self._report(
                report,
                SyncDiscrepancy(
                    SyncDiscrepancyKind.TABLE_NOT_FOUND, table_name.namespace, table_name.qualifier
                ),
            )
            return

        for attribute, recorded, live in _diff(
            _descriptor_attributes(table), descriptor.values, descriptor.configuration
        ):
            self._report(
                report,
                SyncDiscrepancy(
                    SyncDiscrepancyKind.TABLE_ATTRIBUTE_OUT_OF_SYNC,
                    table_name.namespace,
                    table_name.qualifier,
                    attribute=attribute,
                    model_value=recorded,
                    store_value=live,
                ),
            )

        for _, family in model.children(
            SchemaEntityType.TABLE, table_path, SchemaEntityType.COLUMN_FAMILY
        ):
            if family.is_deleted:
                continue
            family_descriptor = descriptor.get_family(family.name)
            if family_descriptor is None:
                self._report(
                    report,
                    SyncDiscrepancy(
                        SyncDiscrepancyKind.FAMILY_NOT_FOUND,
                        table_name.namespace,
                        table_name.qualifier,
                        family.name,
                    ),
                )
                continue
            for attribute, recorded, live in _diff(
                _descriptor_attributes(family),
                family_descriptor.values,
                family_descriptor.configuration,
            ):
                self._report(
                    report,
                    SyncDiscrepancy(
                        SyncDiscrepancyKind.FAMILY_ATTRIBUTE_OUT_OF_SYNC,
                        table_name.namespace,
                        table_name.qualifier,
                        family.name,
                        attribute=attribute,
                        model_value=recorded,
                        store_value=live,
                    ),
                )
