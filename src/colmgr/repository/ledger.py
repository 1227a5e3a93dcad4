"""
Change ledger for schema entity attributes.

Every attribute value ever recorded for an entity is kept as one version of a
cell in the repository table: one row per entity, one column per attribute,
version timestamp = change timestamp. Retention is the column family's
max-versions setting, so the store evicts the oldest changes on insertion.
"""

import json
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..config import DEFAULT_REPOSITORY_MAX_VERSIONS, REPOSITORY_NAMESPACE
from ..exceptions import RepositoryError
from ..store.base import (
    ColumnStore,
    FamilyDescriptor,
    NamespaceDescriptor,
    Put,
    RowResult,
    TableDescriptor,
    TableName,
    current_millis,
)
from .entities import (
    EntityModel,
    EntityPath,
    SchemaEntity,
    SchemaEntityType,
    parse_ledger_attribute_name,
    validate_path,
)


logger = logging.getLogger(__name__)

REPOSITORY_TABLE = TableName(REPOSITORY_NAMESPACE, "repository")
ENTITY_FAMILY = "se"
COUNTER_FAMILY = "cnt"
MAX_RECORD_ATTEMPTS = 10

_PATH_SEPARATOR = "\x00"


def entity_row_key(entity_type: SchemaEntityType, path: Iterable[str]) -> bytes:
    """Repository row key: type code followed by the NUL-joined path."""
    text = entity_type.code + _PATH_SEPARATOR.join(path)
    return text.encode("utf-8", "surrogateescape")


def parse_entity_row_key(row: bytes) -> Tuple[SchemaEntityType, EntityPath]:
    text = row.decode("utf-8", "surrogateescape")
    entity_type = SchemaEntityType.from_code(text[:1])
    path = tuple(text[1:].split(_PATH_SEPARATOR, entity_type.depth - 1))
    return entity_type, validate_path(entity_type, path)


def _attribute_qualifier(attribute_name: str) -> bytes:
    return attribute_name.encode("utf-8", "surrogateescape")


def _attribute_name(qualifier: bytes) -> str:
    return qualifier.decode("utf-8", "surrogateescape")


def _prefix_stop(prefix: bytes) -> Optional[bytes]:
    """Smallest key greater than every key starting with ``prefix``."""
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


@dataclass(frozen=True)
class ChangeEvent:
    """One recorded transition of an entity attribute."""

    entity_type: SchemaEntityType
    path: EntityPath
    attribute_name: str
    attribute_value: Optional[str]
    user_name: str
    timestamp: int

    @property
    def namespace(self) -> str:
        return self.path[0]

    @property
    def table(self) -> Optional[str]:
        return self.path[1] if len(self.path) > 1 else None

    @property
    def column_family(self) -> Optional[str]:
        return self.path[2] if len(self.path) > 2 else None

    @property
    def column_qualifier(self) -> Optional[str]:
        return self.path[3] if len(self.path) > 3 else None

    def sort_key(self):
        return (self.timestamp, self.entity_type.code, self.path, self.attribute_name)


def _encode_envelope(value: Optional[str], user_name: str, timestamp: int) -> bytes:
    # the timestamp keeps every version's bytes distinct for check_and_put
    return json.dumps({"value": value, "user": user_name, "ts": timestamp}).encode("utf-8")


def _decode_envelope(raw: bytes) -> Tuple[Optional[str], str]:
    try:
        data = json.loads(raw.decode("utf-8"))
        return data.get("value"), data.get("user", "")
    except (UnicodeDecodeError, ValueError, AttributeError) as e:
        raise RepositoryError(f"Corrupt change event envelope: {raw[:64]!r}", cause=e) from e


class ChangeLedger:
    """
    Append-only, bounded history of entity attribute values.

    Recording a value equal to the latest recorded one is a no-op. Versions
    are written with check_and_put against the latest stored version, so
    concurrent writers (several ledgers on one store included) never share a
    timestamp for the same attribute and no event overwrites another.
    """

    def __init__(
        self,
        store: ColumnStore,
        user_name: str,
        max_versions: int = DEFAULT_REPOSITORY_MAX_VERSIONS,
    ):
        self.store = store
        self.user_name = user_name
        self.max_versions = max_versions
        self._last_timestamp = 0

    def _next_timestamp(self, floor: int = 0) -> int:
        timestamp = max(current_millis(), self._last_timestamp + 1, floor)
        self._last_timestamp = timestamp
        return timestamp

    # Structure management

    async def install(self) -> bool:
        """
        Create the repository namespace and table when missing.

        Returns:
            True if the table was created
        """
        if not await self.store.namespace_exists(REPOSITORY_NAMESPACE):
            await self.store.create_namespace(NamespaceDescriptor(REPOSITORY_NAMESPACE))
            logger.info(f"Created repository namespace {REPOSITORY_NAMESPACE}")

        descriptor = await self.store.get_table(REPOSITORY_TABLE)
        if descriptor is None:
            entity_family = FamilyDescriptor(ENTITY_FAMILY)
            entity_family.max_versions = self.max_versions
            counter_family = FamilyDescriptor(COUNTER_FAMILY)
            counter_family.max_versions = 1
            await self.store.create_table(
                TableDescriptor(REPOSITORY_TABLE)
                .add_family(entity_family)
                .add_family(counter_family)
            )
            logger.info(
                f"Created repository table {REPOSITORY_TABLE} "
                f"(max versions {self.max_versions})"
            )
            return True

        persisted = descriptor.get_family(ENTITY_FAMILY).max_versions
        if persisted != self.max_versions:
            logger.info(
                f"Repository max versions changing from {persisted} to {self.max_versions}"
            )
            await self.set_max_versions(self.max_versions)
        return False

    async def uninstall(self) -> None:
        if await self.store.table_exists(REPOSITORY_TABLE):
            await self.store.delete_table(REPOSITORY_TABLE)
            logger.info(f"Dropped repository table {REPOSITORY_TABLE}")

    async def get_max_versions(self) -> int:
        descriptor = await self.store.get_table(REPOSITORY_TABLE)
        if descriptor is None:
            raise RepositoryError("Repository structures are not installed")
        return descriptor.get_family(ENTITY_FAMILY).max_versions

    async def set_max_versions(self, max_versions: int) -> None:
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        descriptor = await self.store.get_table(REPOSITORY_TABLE)
        if descriptor is None:
            raise RepositoryError("Repository structures are not installed")
        descriptor.get_family(ENTITY_FAMILY).max_versions = max_versions
        await self.store.modify_table(descriptor)
        self.max_versions = max_versions

    # Recording

    async def _latest_cell(
        self, row: bytes, qualifier: bytes
    ) -> Tuple[Optional[bytes], int]:
        """Raw envelope and timestamp of the newest version, or (None, 0)."""
        result = await self.store.get(
            REPOSITORY_TABLE, row, columns=[(ENTITY_FAMILY, qualifier)]
        )
        versions = result.versions(ENTITY_FAMILY, qualifier)
        if not versions:
            return None, 0
        return versions[0].value, versions[0].timestamp

    async def latest(
        self, entity_type: SchemaEntityType, path: EntityPath, attribute_name: str
    ) -> Optional[ChangeEvent]:
        """Most recent event for one attribute, or None."""
        raw, timestamp = await self._latest_cell(
            entity_row_key(entity_type, path), _attribute_qualifier(attribute_name)
        )
        if raw is None:
            return None
        value, user_name = _decode_envelope(raw)
        return ChangeEvent(entity_type, tuple(path), attribute_name, value, user_name, timestamp)

    async def record(
        self,
        entity_type: SchemaEntityType,
        path: EntityPath,
        attribute_name: str,
        value: Optional[str],
        user_name: Optional[str] = None,
    ) -> Optional[ChangeEvent]:
        """
        Record a new value for one attribute.

        Args:
            entity_type: Type of the entity
            path: Entity path
            attribute_name: Recorded attribute name (``Value__``/``Configuration__``
                prefixed, or an engine attribute)
            value: New value; None records the attribute's removal
            user_name: Actor, defaulting to the ledger's user

        Returns:
            The recorded event, or None when the value did not change

        Raises:
            RepositoryError: If concurrent writers kept winning the race for
                this attribute
        """
        path = validate_path(entity_type, path)
        user_name = user_name or self.user_name
        row = entity_row_key(entity_type, path)
        qualifier = _attribute_qualifier(attribute_name)

        for _ in range(MAX_RECORD_ATTEMPTS):
            raw, latest_timestamp = await self._latest_cell(row, qualifier)
            if raw is None and value is None:
                return None
            if raw is not None and _decode_envelope(raw)[0] == value:
                return None

            timestamp = self._next_timestamp(latest_timestamp + 1)
            put = Put(row).add_column(
                ENTITY_FAMILY, qualifier, _encode_envelope(value, user_name, timestamp), timestamp
            )
            if await self.store.check_and_put(
                REPOSITORY_TABLE, row, ENTITY_FAMILY, qualifier, raw, put
            ):
                logger.debug(
                    f"Recorded {entity_type.value} {'/'.join(path)} {attribute_name}={value!r}"
                )
                return ChangeEvent(entity_type, path, attribute_name, value, user_name, timestamp)
            logger.debug(
                f"Concurrent change to {entity_type.value} {'/'.join(path)} "
                f"{attribute_name}, retrying"
            )

        raise RepositoryError(
            f"Could not record {attribute_name} for {entity_type.value} {'/'.join(path)} "
            f"after {MAX_RECORD_ATTEMPTS} attempts",
            details={"entity_type": entity_type.value, "path": list(path)},
        )

    async def record_entity(
        self, entity_type: SchemaEntityType, path: EntityPath, entity: SchemaEntity
    ) -> List[ChangeEvent]:
        """Record every attribute of an entity; unchanged ones are skipped."""
        events = []
        for attribute_name, value in sorted(entity.attributes().items()):
            event = await self.record(entity_type, path, attribute_name, value)
            if event is not None:
                events.append(event)
        return events

    async def increment_counter(
        self,
        entity_type: SchemaEntityType,
        path: EntityPath,
        attribute_name: str,
        amount: int,
    ) -> int:
        """Atomically add to an entity counter and return the new total."""
        return await self.store.increment(
            REPOSITORY_TABLE,
            entity_row_key(entity_type, validate_path(entity_type, path)),
            COUNTER_FAMILY,
            _attribute_qualifier(attribute_name),
            amount,
        )

    # Reading

    def _events_from_row(self, result: RowResult) -> List[ChangeEvent]:
        entity_type, path = parse_entity_row_key(result.row)
        events = []
        for cell in result.cells:
            if cell.family != ENTITY_FAMILY:
                continue
            value, user_name = _decode_envelope(cell.value)
            events.append(
                ChangeEvent(
                    entity_type,
                    path,
                    _attribute_name(cell.qualifier),
                    value,
                    user_name,
                    cell.timestamp,
                )
            )
        return events

    async def _scan_events(self, start_row: Optional[bytes], stop_row: Optional[bytes]) -> List[ChangeEvent]:
        events = []
        async for result in self.store.scan(
            REPOSITORY_TABLE,
            families=[ENTITY_FAMILY],
            start_row=start_row,
            stop_row=stop_row,
            max_versions=self.max_versions,
        ):
            events.extend(self._events_from_row(result))
        return events

    async def events(
        self,
        entity_type: Optional[SchemaEntityType] = None,
        path: EntityPath = (),
        include_children: bool = False,
        attribute_name: Optional[str] = None,
    ) -> List[ChangeEvent]:
        """
        Retrieve recorded events in timestamp order.

        With no entity_type every event is returned. With an entity_type and
        path, the entity's own events are returned, plus its descendants'
        events when include_children is set.
        """
        if entity_type is None:
            events = await self._scan_events(None, None)
        else:
            path = validate_path(entity_type, path)
            row = entity_row_key(entity_type, path)
            result = await self.store.get(
                REPOSITORY_TABLE,
                row,
                families=[ENTITY_FAMILY],
                max_versions=self.max_versions,
            )
            events = self._events_from_row(result) if not result.is_empty else []
            if include_children:
                for child_type in SchemaEntityType:
                    if child_type.depth <= entity_type.depth:
                        continue
                    prefix = entity_row_key(child_type, path + ("",))
                    events.extend(await self._scan_events(prefix, _prefix_stop(prefix)))

        if attribute_name is not None:
            events = [e for e in events if e.attribute_name == attribute_name]
        events.sort(key=ChangeEvent.sort_key)
        return events

    async def load_model(self) -> EntityModel:
        """Rebuild the entity model from the latest value of every attribute."""
        model = EntityModel()
        count = 0
        async for result in self.store.scan(REPOSITORY_TABLE, families=[ENTITY_FAMILY]):
            entity_type, path = parse_entity_row_key(result.row)
            entity = model.get_or_create(entity_type, path)
            for cell in result.cells:
                value, _ = _decode_envelope(cell.value)
                try:
                    configuration, key = parse_ledger_attribute_name(
                        _attribute_name(cell.qualifier)
                    )
                except ValueError:
                    logger.warning(
                        f"Skipping unrecognized attribute {cell.qualifier!r} "
                        f"on {entity_type.value} {'/'.join(path)}"
                    )
                    continue
                entity.set(key, value, configuration)
            count += 1
        logger.debug(f"Loaded {count} entities from {REPOSITORY_TABLE}")
        return model
