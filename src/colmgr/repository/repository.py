"""
Repository engine for colmgr.

Owns the entity model, the change ledger and the alias translator, and
exposes the administrative surface: column definitions, enforcement and
aliasing switches, auditor queries, discovery seeding, schema export/import
and the synchronization check. The write interceptor calls back into the
repository to validate, alias-translate and audit governed writes.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..config import REPOSITORY_NAMESPACE, WILDCARD, GovernanceConfig
from ..exceptions import StoreError, TableNotFoundError, TableNotIncludedError
from ..store.base import (
    Cell,
    ColumnStore,
    FamilyDescriptor,
    NamespaceDescriptor,
    Put,
    RowResult,
    TableDescriptor,
    TableLike,
    TableName,
)
from .aliases import AliasTranslator, decode_alias
from .archive import SchemaArchive, archive_to_model, model_to_archive
from .entities import (
    CELL_OCCURRENCES,
    COL_ALIASES_ENABLED,
    COL_DEFINITIONS_ENFORCED,
    COLUMN_ALIAS,
    COLUMN_OCCURRENCES,
    FALSE,
    MAX_VALUE_LENGTH,
    STATUS,
    STATUS_ACTIVE,
    STATUS_DELETED,
    TRUE,
    ColumnAuditor,
    ColumnDefinition,
    EntityModel,
    EntityPath,
    SchemaEntity,
    SchemaEntityType,
    column_path,
    family_path,
    ledger_attribute_name,
    namespace_path,
    table_path,
)
from .ledger import ChangeLedger
from .monitor import ChangeEventMonitor
from .synchronizer import Synchronizer, SyncReport
from .validation import UNDEFINED, ColumnViolation, EnforcementState, ValidationEngine


logger = logging.getLogger(__name__)


@dataclass
class DiscoveredColumn:
    """Column statistics reported by a discovery job."""

    qualifier: bytes
    max_value_length: int
    column_occurrences: int
    cell_occurrences: int


class Repository:
    """
    Governance engine shared by every governed handle of one session.

    ``store`` is the raw, ungoverned store; the repository writes its own
    metadata there directly.
    """

    def __init__(self, store: ColumnStore, config: GovernanceConfig):
        self.store = store
        self.config = config
        self.ledger = ChangeLedger(
            store, config.effective_user_name, config.repository_max_versions
        )
        self.aliases = AliasTranslator(store, self.ledger)
        self.validation = ValidationEngine()
        self.synchronizer = Synchronizer(store, config)
        self.monitor = ChangeEventMonitor(self.ledger, config)
        self.model = EntityModel()

    # Repository structures

    async def install_repository_structures(self) -> None:
        """Create the repository and alias tables when missing."""
        await self.ledger.install()
        await self.aliases.install()

    async def uninstall_repository_structures(self) -> None:
        """Drop every repository structure; all recorded history is lost."""
        await self.ledger.uninstall()
        await self.aliases.uninstall()
        if await self.store.namespace_exists(REPOSITORY_NAMESPACE):
            await self.store.delete_namespace(REPOSITORY_NAMESPACE)
        self.model = EntityModel()
        logger.info("Repository structures uninstalled")

    async def open(self) -> None:
        """Install structures if needed and load the entity model."""
        await self.install_repository_structures()
        self.model = await self.ledger.load_model()
        logger.info(f"Repository opened with {len(self.model)} entities")

    async def get_repository_max_versions(self) -> int:
        return await self.ledger.get_max_versions()

    async def set_repository_max_versions(self, max_versions: int) -> None:
        await self.ledger.set_max_versions(max_versions)
        logger.info(f"Repository max versions set to {max_versions}")

    async def check_synchronization(self) -> SyncReport:
        return await self.synchronizer.check(self.model)

    # Inclusion

    def is_included_table(self, table: TableLike) -> bool:
        return self.config.is_included_table(TableName.value_of(table))

    def _included(self, table: TableLike) -> TableName:
        name = TableName.value_of(table)
        if not self.config.is_included_table(name):
            raise TableNotIncludedError(str(name))
        return name

    # Model and ledger bookkeeping

    async def _set(
        self,
        entity_type: SchemaEntityType,
        path: EntityPath,
        key: str,
        value: Optional[str],
        configuration: bool = False,
    ) -> bool:
        """
        Record one attribute change in the ledger, then apply it to the model.

        The model only changes once the ledger write succeeded, so a failed
        write is retried in full by the next call.
        """
        entity = self.model.get_or_create(entity_type, path)
        if entity.get(key, configuration) == value:
            return False
        await self.ledger.record(
            entity_type, path, ledger_attribute_name(key, configuration), value
        )
        entity.set(key, value, configuration)
        return True

    async def _mirror_attributes(
        self,
        entity_type: SchemaEntityType,
        path: EntityPath,
        values: Dict[str, str],
        configuration: Dict[str, str],
    ) -> None:
        """Make an entity's descriptor attributes equal to the given ones."""
        entity = self.model.get_or_create(entity_type, path)
        mirrored = {k for k in entity.values if not k.startswith("_")} | set(values)
        for key in sorted(mirrored):
            await self._set(entity_type, path, key, values.get(key))
        for key in sorted(set(entity.configuration) | set(configuration)):
            await self._set(entity_type, path, key, configuration.get(key), configuration=True)

    async def record_namespace(self, descriptor: NamespaceDescriptor) -> None:
        if not self.config.is_included_namespace(descriptor.name):
            return
        path = namespace_path(descriptor.name)
        await self._set(SchemaEntityType.NAMESPACE, path, STATUS, STATUS_ACTIVE)
        await self._mirror_attributes(
            SchemaEntityType.NAMESPACE, path, {}, descriptor.configuration
        )

    async def record_namespace_deleted(self, namespace: str) -> None:
        if self.model.find(SchemaEntityType.NAMESPACE, namespace_path(namespace)) is None:
            return
        await self._set(
            SchemaEntityType.NAMESPACE, namespace_path(namespace), STATUS, STATUS_DELETED
        )

    async def _ensure_namespace_recorded(self, namespace: str) -> None:
        entity = self.model.find(SchemaEntityType.NAMESPACE, namespace_path(namespace))
        if entity is not None and entity.values.get(STATUS) == STATUS_ACTIVE:
            return
        descriptor = await self.store.get_namespace(namespace)
        await self.record_namespace(descriptor or NamespaceDescriptor(namespace))

    async def record_table(self, descriptor: TableDescriptor) -> None:
        """Mirror a table descriptor and its families into the model."""
        name = descriptor.name
        if not self.config.is_included_table(name):
            return
        await self._ensure_namespace_recorded(name.namespace)

        path = table_path(name.namespace, name.qualifier)
        await self._set(SchemaEntityType.TABLE, path, STATUS, STATUS_ACTIVE)
        await self._mirror_attributes(
            SchemaEntityType.TABLE, path, descriptor.values, descriptor.configuration
        )
        for family in descriptor.families.values():
            await self._record_family(name, family)

        for fpath, family_entity in self.model.children(
            SchemaEntityType.TABLE, path, SchemaEntityType.COLUMN_FAMILY
        ):
            if family_entity.name not in descriptor.families and not family_entity.is_deleted:
                await self._set(SchemaEntityType.COLUMN_FAMILY, fpath, STATUS, STATUS_DELETED)

    async def _record_family(self, name: TableName, family: FamilyDescriptor) -> None:
        path = family_path(name.namespace, name.qualifier, family.name)
        await self._set(SchemaEntityType.COLUMN_FAMILY, path, STATUS, STATUS_ACTIVE)
        await self._mirror_attributes(
            SchemaEntityType.COLUMN_FAMILY, path, family.values, family.configuration
        )

    async def record_table_deleted(self, table: TableLike) -> None:
        name = TableName.value_of(table)
        path = table_path(name.namespace, name.qualifier)
        if self.model.find(SchemaEntityType.TABLE, path) is None:
            return
        await self._set(SchemaEntityType.TABLE, path, STATUS, STATUS_DELETED)

    async def _ensure_table_recorded(
        self, name: TableName, families: Iterable[str] = ()
    ) -> Optional[TableDescriptor]:
        """
        Record the live descriptor of a table the model does not know yet
        (or whose families it has not seen). Returns the descriptor recorded.
        """
        path = table_path(name.namespace, name.qualifier)
        entity = self.model.find(SchemaEntityType.TABLE, path)
        known = entity is not None and entity.values.get(STATUS) == STATUS_ACTIVE and all(
            self.model.find(
                SchemaEntityType.COLUMN_FAMILY, family_path(name.namespace, name.qualifier, f)
            ) is not None
            for f in families
        )
        if known:
            return None
        descriptor = await self.store.get_table(name)
        if descriptor is None:
            raise TableNotFoundError(str(name))
        await self.record_table(descriptor)
        return descriptor

    async def _require_family(self, name: TableName, family: str) -> None:
        await self._ensure_table_recorded(name, [family])
        entity = self.model.find(
            SchemaEntityType.COLUMN_FAMILY, family_path(name.namespace, name.qualifier, family)
        )
        if entity is None or entity.is_deleted:
            raise StoreError(f"Column family '{family}' does not exist in table {name}")

    def _family_entity(self, name: TableName, family: str) -> Optional[SchemaEntity]:
        return self.model.find(
            SchemaEntityType.COLUMN_FAMILY, family_path(name.namespace, name.qualifier, family)
        )

    # Column definitions and enforcement

    async def add_column_definition(
        self, table: TableLike, family: str, definition: ColumnDefinition
    ) -> None:
        name = self._included(table)
        await self._require_family(name, family)
        path = column_path(name.namespace, name.qualifier, family, definition.qualifier)
        await self._set(SchemaEntityType.COLUMN_DEFINITION, path, STATUS, STATUS_ACTIVE)
        for key, value in definition.to_values().items():
            await self._set(SchemaEntityType.COLUMN_DEFINITION, path, key, value)
        await self._mirror_attributes(
            SchemaEntityType.COLUMN_DEFINITION, path, {}, definition.configuration
        )
        logger.info(f"Column definition {definition.qualifier!r} set on {name}:{family}")

    async def add_column_definitions(
        self, table: TableLike, family: str, definitions: Iterable[ColumnDefinition]
    ) -> None:
        for definition in definitions:
            await self.add_column_definition(table, family, definition)

    async def delete_column_definition(
        self, table: TableLike, family: str, qualifier: bytes
    ) -> bool:
        """
        Retire a column definition. Its history is kept.

        Returns:
            True if an active definition was retired
        """
        name = self._included(table)
        path = column_path(name.namespace, name.qualifier, family, qualifier)
        entity = self.model.find(SchemaEntityType.COLUMN_DEFINITION, path)
        if entity is None or entity.is_deleted:
            return False
        await self._set(SchemaEntityType.COLUMN_DEFINITION, path, STATUS, STATUS_DELETED)
        logger.info(f"Column definition {qualifier!r} removed from {name}:{family}")
        return True

    def _definitions(self, name: TableName, family: str) -> Dict[bytes, ColumnDefinition]:
        definitions = {}
        for _, entity in self.model.children(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            SchemaEntityType.COLUMN_DEFINITION,
        ):
            if not entity.is_deleted:
                definition = ColumnDefinition.from_entity(entity)
                definitions[definition.qualifier] = definition
        return definitions

    async def get_column_definitions(self, table: TableLike, family: str) -> List[ColumnDefinition]:
        name = self._included(table)
        return list(self._definitions(name, family).values())

    async def enable_column_definition_enforcement(
        self, enabled: bool, table: TableLike, family: str
    ) -> None:
        name = self._included(table)
        await self._require_family(name, family)
        await self._set(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            COL_DEFINITIONS_ENFORCED,
            TRUE if enabled else FALSE,
        )
        logger.info(
            f"Column definition enforcement {'enabled' if enabled else 'disabled'} "
            f"on {name}:{family}"
        )

    def enforcement_state(self, table: TableLike, family: str) -> EnforcementState:
        name = TableName.value_of(table)
        if not self.config.is_included_table(name):
            return EnforcementState.UNENFORCED
        entity = self._family_entity(name, family)
        return EnforcementState.of(
            entity is not None and entity.is_flag_set(COL_DEFINITIONS_ENFORCED)
        )

    async def column_definitions_enforced(self, table: TableLike, family: str) -> bool:
        self._included(table)
        return self.enforcement_state(table, family) == EnforcementState.ENFORCED

    def _enforced_definitions(
        self, name: TableName, families: Iterable[str]
    ) -> Dict[str, Dict[bytes, ColumnDefinition]]:
        return {
            family: self._definitions(name, family)
            for family in families
            if self.enforcement_state(name, family) == EnforcementState.ENFORCED
        }

    def validate_put(self, table: TableLike, put: Put) -> None:
        """Raise the typed error for the first enforcement violation in a put."""
        name = TableName.value_of(table)
        enforced = self._enforced_definitions(name, put.families)
        if enforced:
            self.validation.validate_put(str(name), put, enforced)

    def validate_columns_defined(self, table: TableLike, put: Put) -> None:
        """Only the definition-exists rule (used for counter increments)."""
        name = TableName.value_of(table)
        for family, definitions in self._enforced_definitions(name, put.families).items():
            for cell in put.cells_for_family(family):
                if cell.qualifier not in definitions:
                    raise ColumnViolation(
                        str(name), put.row, family, cell.qualifier, cell.value, UNDEFINED
                    ).to_error()

    async def find_violations(self, table: TableLike, put: Put) -> List[ColumnViolation]:
        name = self._included(table)
        return self.validation.find_violations(
            str(name), put, self._enforced_definitions(name, put.families)
        )

    # Aliases

    def aliases_enabled(self, table: TableLike, family: str) -> bool:
        name = TableName.value_of(table)
        if not self.config.is_included_table(name):
            return False
        entity = self._family_entity(name, family)
        return entity is not None and entity.is_flag_set(COL_ALIASES_ENABLED)

    async def column_aliases_enabled(self, table: TableLike, family: str) -> bool:
        self._included(table)
        return self.aliases_enabled(table, family)

    async def enable_column_aliases(self, table: TableLike, family: str) -> None:
        """
        Turn on aliasing for a family. Aliasing cannot be turned off again.

        Raises:
            AliasingAlreadyInUseError: If the family already holds columns
        """
        name = self._included(table)
        await self._require_family(name, family)
        if self.aliases_enabled(name, family):
            return
        auditors = self.model.children(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            SchemaEntityType.COLUMN_AUDITOR,
        )
        await self.aliases.enable(name, family, len(auditors))
        await self._set(
            SchemaEntityType.COLUMN_FAMILY,
            family_path(name.namespace, name.qualifier, family),
            COL_ALIASES_ENABLED,
            TRUE,
        )
        logger.info(f"Column aliases enabled on {name}:{family}")

    async def alias_put(self, table: TableLike, put: Put) -> Put:
        """Copy of ``put`` with qualifiers of aliased families replaced."""
        name = TableName.value_of(table)
        aliased = {f for f in put.families if self.aliases_enabled(name, f)}
        if not aliased:
            return put
        translated = Put(put.row)
        for cell in put.cells:
            qualifier = cell.qualifier
            if cell.family in aliased:
                qualifier = await self.alias_for_write(name, cell.family, qualifier)
            translated.cells.append(Cell(cell.family, qualifier, cell.value, cell.timestamp))
        return translated

    async def alias_for_write(self, name: TableName, family: str, qualifier: bytes) -> bytes:
        alias = await self.aliases.translate_for_write(name, family, qualifier)
        self.model.set_attribute(
            SchemaEntityType.COLUMN_AUDITOR,
            column_path(name.namespace, name.qualifier, family, qualifier),
            COLUMN_ALIAS,
            str(decode_alias(alias)),
        )
        return alias

    async def alias_for_read(self, table: TableLike, family: str, qualifier: bytes) -> Optional[bytes]:
        """Stored key of ``qualifier`` in an aliased family, or None if unmapped."""
        return await self.aliases.find_alias(TableName.value_of(table), family, qualifier)

    async def decode_result(self, table: TableLike, result: RowResult) -> RowResult:
        """Replace aliases in a read result with their qualifiers."""
        name = TableName.value_of(table)
        aliased = {f for f, _ in result.columns() if self.aliases_enabled(name, f)}
        if not aliased:
            return result
        cells = []
        for cell in result.cells:
            if cell.family in aliased:
                qualifier = await self.aliases.translate_for_read(name, cell.family, cell.qualifier)
                cell = Cell(cell.family, qualifier, cell.value, cell.timestamp)
            cells.append(cell)
        return RowResult(result.row, cells)

    # Auditing

    async def audit_put(self, table: TableLike, put: Put) -> None:
        """
        Update ColumnAuditors for a delegated put (original qualifiers).
        """
        name = TableName.value_of(table)
        await self._ensure_table_recorded(name, put.families)

        columns: "OrderedDict[Tuple[str, bytes], List[int]]" = OrderedDict()
        for cell in put.cells:
            stats = columns.setdefault(cell.column, [0, 0])
            stats[0] = max(stats[0], len(cell.value))
            stats[1] += 1

        for (family, qualifier), (max_length, cell_count) in columns.items():
            path = column_path(name.namespace, name.qualifier, family, qualifier)
            auditor = self.model.get_or_create(SchemaEntityType.COLUMN_AUDITOR, path)
            recorded_max = auditor.values.get(MAX_VALUE_LENGTH)
            if recorded_max is None or max_length > int(recorded_max):
                await self._set(
                    SchemaEntityType.COLUMN_AUDITOR, path, MAX_VALUE_LENGTH, str(max_length)
                )
            await self._add_to_counter(path, COLUMN_OCCURRENCES, 1)
            await self._add_to_counter(path, CELL_OCCURRENCES, cell_count)

    async def _add_to_counter(self, path: EntityPath, attribute: str, amount: int) -> int:
        total = await self.ledger.increment_counter(
            SchemaEntityType.COLUMN_AUDITOR, path, attribute, amount
        )
        await self._set(SchemaEntityType.COLUMN_AUDITOR, path, attribute, str(total))
        return total

    async def _set_counter(self, path: EntityPath, attribute: str, value: int) -> None:
        current = await self.ledger.increment_counter(
            SchemaEntityType.COLUMN_AUDITOR, path, attribute, 0
        )
        if current != value:
            await self._add_to_counter(path, attribute, value - current)
        else:
            await self._set(SchemaEntityType.COLUMN_AUDITOR, path, attribute, str(value))

    async def apply_discovery_results(
        self, table: TableLike, family: str, results: Iterable[DiscoveredColumn]
    ) -> int:
        """
        Seed ColumnAuditors from discovery output, replacing their statistics.

        Returns:
            Number of columns applied
        """
        name = self._included(table)
        await self._require_family(name, family)
        count = 0
        for result in results:
            path = column_path(name.namespace, name.qualifier, family, result.qualifier)
            await self._set(
                SchemaEntityType.COLUMN_AUDITOR,
                path,
                MAX_VALUE_LENGTH,
                str(result.max_value_length),
            )
            await self._set_counter(path, COLUMN_OCCURRENCES, result.column_occurrences)
            await self._set_counter(path, CELL_OCCURRENCES, result.cell_occurrences)
            count += 1
        logger.info(f"Applied discovery results for {count} columns of {name}:{family}")
        return count

    async def get_column_auditors(self, table: TableLike, family: str) -> List[ColumnAuditor]:
        name = self._included(table)
        return [
            ColumnAuditor.from_entity(entity)
            for _, entity in self.model.children(
                SchemaEntityType.COLUMN_FAMILY,
                family_path(name.namespace, name.qualifier, family),
                SchemaEntityType.COLUMN_AUDITOR,
            )
        ]

    async def get_column_qualifiers(self, table: TableLike, family: str) -> List[bytes]:
        return [auditor.qualifier for auditor in await self.get_column_auditors(table, family)]

    async def set_column_auditor_configuration(
        self,
        table: TableLike,
        family: str,
        qualifier: bytes,
        configuration: Dict[str, Optional[str]],
    ) -> None:
        """Set (or with None, remove) user metadata on a ColumnAuditor."""
        name = self._included(table)
        path = column_path(name.namespace, name.qualifier, family, qualifier)
        if self.model.find(SchemaEntityType.COLUMN_AUDITOR, path) is None:
            raise StoreError(f"No column auditor for {qualifier!r} in {name}:{family}")
        for key, value in configuration.items():
            await self._set(SchemaEntityType.COLUMN_AUDITOR, path, key, value, configuration=True)

    # Schema export and import

    def export_schema(
        self, namespace: Optional[str] = None, table: Optional[TableLike] = None
    ) -> SchemaArchive:
        if table is not None:
            name = self._included(table)
            return model_to_archive(self.model, table=str(name))
        if namespace is not None and not self.config.is_included_namespace(namespace):
            raise TableNotIncludedError(f"{namespace}:{WILDCARD}")
        return model_to_archive(self.model, namespace=namespace)

    async def import_schema(self, archive: SchemaArchive, create_missing: bool = True) -> int:
        """
        Apply an archive to the store and the repository.

        Namespaces and tables outside the governance scope are skipped. With
        ``create_missing``, namespaces and tables absent from the store are
        created from the archived descriptors.

        Returns:
            Number of entities imported
        """
        imported = archive_to_model(archive)
        count = 0
        for ns_path, namespace in imported.children(None, ()):
            if not self.config.is_included_namespace(namespace.name):
                logger.info(f"Skipping namespace {namespace.name}: not included")
                continue
            if create_missing and not await self.store.namespace_exists(namespace.name):
                await self.store.create_namespace(
                    NamespaceDescriptor(namespace.name, dict(namespace.configuration))
                )
            count += await self._import_entity(SchemaEntityType.NAMESPACE, ns_path, namespace)

            for t_path, table in imported.children(SchemaEntityType.NAMESPACE, ns_path):
                name = TableName(namespace.name, table.name)
                if not self.config.is_included_table(name):
                    logger.info(f"Skipping table {name}: not included")
                    continue
                if create_missing and not await self.store.table_exists(name):
                    await self.store.create_table(self._descriptor_from_entities(imported, name))
                    logger.info(f"Created table {name} from schema archive")
                for path, entity in imported.walk(SchemaEntityType.TABLE, t_path):
                    count += await self._import_entity(entity.entity_type, path, entity)

        logger.info(f"Imported {count} entities from schema archive")
        return count

    @staticmethod
    def _descriptor_from_entities(model: EntityModel, name: TableName) -> TableDescriptor:
        path = table_path(name.namespace, name.qualifier)
        table = model.find(SchemaEntityType.TABLE, path)
        descriptor = TableDescriptor(
            name,
            values={k: v for k, v in table.values.items() if not k.startswith("_")},
            configuration=dict(table.configuration),
        )
        for _, family in model.children(SchemaEntityType.TABLE, path, SchemaEntityType.COLUMN_FAMILY):
            if family.is_deleted:
                continue
            descriptor.add_family(
                FamilyDescriptor(
                    family.name,
                    values={k: v for k, v in family.values.items() if not k.startswith("_")},
                    configuration=dict(family.configuration),
                )
            )
        return descriptor

    async def _import_entity(
        self,
        entity_type: SchemaEntityType,
        path: EntityPath,
        entity: SchemaEntity,
    ) -> int:
        counters = (COLUMN_OCCURRENCES, CELL_OCCURRENCES)
        for key, value in sorted(entity.values.items()):
            if key == COLUMN_ALIAS:
                # alias numbers are only meaningful with the source store's mappings
                continue
            if entity_type == SchemaEntityType.COLUMN_AUDITOR and key in counters:
                await self._set_counter(path, key, int(value))
            else:
                await self._set(entity_type, path, key, value)
        for key, value in sorted(entity.configuration.items()):
            await self._set(entity_type, path, key, value, configuration=True)
        return 1
