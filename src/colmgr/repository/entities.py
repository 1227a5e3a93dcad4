"""
Schema entity model for the colmgr repository.

Entities form a containment tree: Namespace, Table, ColumnFamily, and below
each family its ColumnAuditors and ColumnDefinitions. The model stores them
arena-style, keyed by entity type and path, with a separate children index.
Children never hold a reference to their parent; parents are found by path.
"""

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


# Engine-maintained attributes, kept in SchemaEntity.values
STATUS = "_Status"
STATUS_ACTIVE = "A"
STATUS_DELETED = "D"
COL_DEFINITIONS_ENFORCED = "_ColDefinitionsEnforced"
COL_ALIASES_ENABLED = "_ColAliasesEnabled"
MAX_VALUE_LENGTH = "_MaxValueLength"
COLUMN_OCCURRENCES = "_ColumnOccurrences"
CELL_OCCURRENCES = "_CellOccurrences"
COLUMN_ALIAS = "_ColumnAlias"
COLUMN_LENGTH = "_ColumnLength"
COLUMN_VALIDATION_REGEX = "_ColumnValidationRegex"

VALUE_PREFIX = "Value__"
CONFIGURATION_PREFIX = "Configuration__"

TRUE = "true"
FALSE = "false"

EntityPath = Tuple[str, ...]


class SchemaEntityType(str, Enum):
    """Kinds of entity tracked by the repository."""

    NAMESPACE = "namespace"
    TABLE = "table"
    COLUMN_FAMILY = "column_family"
    COLUMN_AUDITOR = "column_auditor"
    COLUMN_DEFINITION = "column_definition"

    @property
    def code(self) -> str:
        """Single-character code used in persisted row keys."""
        return _TYPE_CODES[self]

    @property
    def depth(self) -> int:
        """Number of path segments identifying an entity of this type."""
        return _TYPE_DEPTHS[self]

    @property
    def parent_type(self) -> Optional["SchemaEntityType"]:
        return _PARENT_TYPES.get(self)

    @classmethod
    def from_code(cls, code: str) -> "SchemaEntityType":
        for entity_type, entity_code in _TYPE_CODES.items():
            if entity_code == code:
                return entity_type
        raise ValueError(f"Unknown entity type code: {code!r}")


_TYPE_CODES = {
    SchemaEntityType.NAMESPACE: "N",
    SchemaEntityType.TABLE: "T",
    SchemaEntityType.COLUMN_FAMILY: "F",
    SchemaEntityType.COLUMN_AUDITOR: "A",
    SchemaEntityType.COLUMN_DEFINITION: "D",
}

_TYPE_DEPTHS = {
    SchemaEntityType.NAMESPACE: 1,
    SchemaEntityType.TABLE: 2,
    SchemaEntityType.COLUMN_FAMILY: 3,
    SchemaEntityType.COLUMN_AUDITOR: 4,
    SchemaEntityType.COLUMN_DEFINITION: 4,
}

_PARENT_TYPES = {
    SchemaEntityType.TABLE: SchemaEntityType.NAMESPACE,
    SchemaEntityType.COLUMN_FAMILY: SchemaEntityType.TABLE,
    SchemaEntityType.COLUMN_AUDITOR: SchemaEntityType.COLUMN_FAMILY,
    SchemaEntityType.COLUMN_DEFINITION: SchemaEntityType.COLUMN_FAMILY,
}

_TYPE_ORDER = {entity_type: i for i, entity_type in enumerate(SchemaEntityType)}


def qualifier_to_name(qualifier: bytes) -> str:
    """Column qualifier bytes as an entity name (lossless for any bytes)."""
    return qualifier.decode("utf-8", "surrogateescape")


def name_to_qualifier(name: str) -> bytes:
    """Inverse of qualifier_to_name."""
    return name.encode("utf-8", "surrogateescape")


def ledger_attribute_name(key: str, configuration: bool = False) -> str:
    """Attribute name under which a values/configuration key is recorded."""
    if configuration:
        return CONFIGURATION_PREFIX + key
    if key.startswith("_"):
        return key
    return VALUE_PREFIX + key


def parse_ledger_attribute_name(attribute_name: str) -> Tuple[bool, str]:
    """
    Split a recorded attribute name into (is_configuration, key).

    Raises:
        ValueError: If the name carries no recognized prefix
    """
    if attribute_name.startswith(CONFIGURATION_PREFIX):
        return True, attribute_name[len(CONFIGURATION_PREFIX):]
    if attribute_name.startswith(VALUE_PREFIX):
        return False, attribute_name[len(VALUE_PREFIX):]
    if attribute_name.startswith("_"):
        return False, attribute_name
    raise ValueError(f"Unrecognized attribute name: {attribute_name!r}")


def validate_path(entity_type: SchemaEntityType, path: Sequence[str]) -> EntityPath:
    """Check that a path has the right depth and no empty segments."""
    path = tuple(path)
    if len(path) != entity_type.depth:
        raise ValueError(
            f"{entity_type.value} path needs {entity_type.depth} segments, got {path!r}"
        )
    for segment in path:
        if segment is None or not isinstance(segment, str) or segment == "":
            raise ValueError(f"Invalid segment in {entity_type.value} path {path!r}")
    return path


@total_ordering
@dataclass(eq=False)
class SchemaEntity:
    """
    One node of the schema tree.

    Equality and ordering compare type, name, values and configuration;
    children are not part of an entity's identity.
    """

    entity_type: SchemaEntityType
    name: str
    values: Dict[str, str] = field(default_factory=dict)
    configuration: Dict[str, str] = field(default_factory=dict)

    def _sort_key(self):
        return (
            _TYPE_ORDER[self.entity_type],
            self.name,
            sorted(self.values.items()),
            sorted(self.configuration.items()),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, SchemaEntity):
            return NotImplemented
        return self._sort_key() == other._sort_key()

    def __lt__(self, other) -> bool:
        if not isinstance(other, SchemaEntity):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    __hash__ = None

    def get(self, key: str, configuration: bool = False) -> Optional[str]:
        source = self.configuration if configuration else self.values
        return source.get(key)

    def set(self, key: str, value: Optional[str], configuration: bool = False) -> bool:
        """Set or (with None) remove an attribute. Returns True if it changed."""
        target = self.configuration if configuration else self.values
        if value is None:
            return target.pop(key, None) is not None
        if target.get(key) == value:
            return False
        target[key] = value
        return True

    def attributes(self) -> Dict[str, str]:
        """All attributes keyed by their recorded attribute names."""
        result = {ledger_attribute_name(k): v for k, v in self.values.items()}
        result.update(
            {ledger_attribute_name(k, configuration=True): v for k, v in self.configuration.items()}
        )
        return result

    @property
    def is_deleted(self) -> bool:
        return self.values.get(STATUS) == STATUS_DELETED

    def is_flag_set(self, key: str) -> bool:
        """Boolean engine flag; an absent flag reads as False."""
        return self.values.get(key, FALSE).lower() == TRUE

    def copy(self) -> "SchemaEntity":
        return copy.deepcopy(self)


EntityKey = Tuple[SchemaEntityType, EntityPath]


class EntityModel:
    """
    In-memory arena of schema entities.

    Mutations never fail for structural reasons: missing ancestors are
    created on demand. Only malformed paths raise ValueError.
    """

    def __init__(self):
        self._entities: Dict[EntityKey, SchemaEntity] = {}
        # parent key (None for the root) -> child keys in insertion order
        self._children: Dict[Optional[EntityKey], Dict[EntityKey, None]] = {None: {}}

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, key: EntityKey) -> bool:
        return key in self._entities

    def __eq__(self, other) -> bool:
        if not isinstance(other, EntityModel):
            return NotImplemented
        return self._entities == other._entities

    __hash__ = None

    def _link(self, entity_type: SchemaEntityType, path: EntityPath) -> None:
        parent_type = entity_type.parent_type
        parent_key = (parent_type, path[:-1]) if parent_type is not None else None
        self._children.setdefault(parent_key, {})[(entity_type, path)] = None
        self._children.setdefault((entity_type, path), {})

    def get_or_create(self, entity_type: SchemaEntityType, path: Sequence[str]) -> SchemaEntity:
        """Return the entity at ``path``, creating it and any missing ancestors."""
        path = validate_path(entity_type, path)
        entity = self._entities.get((entity_type, path))
        if entity is not None:
            return entity

        parent_type = entity_type.parent_type
        if parent_type is not None:
            self.get_or_create(parent_type, path[:-1])
        entity = SchemaEntity(entity_type, path[-1])
        self._entities[(entity_type, path)] = entity
        self._link(entity_type, path)
        return entity

    def find(self, entity_type: SchemaEntityType, path: Sequence[str]) -> Optional[SchemaEntity]:
        return self._entities.get((entity_type, validate_path(entity_type, path)))

    def set_attribute(
        self,
        entity_type: SchemaEntityType,
        path: Sequence[str],
        key: str,
        value: Optional[str],
        configuration: bool = False,
    ) -> bool:
        """
        Set one attribute on the entity at ``path``.

        Returns:
            True if the stored value changed, False for a no-op rewrite
        """
        return self.get_or_create(entity_type, path).set(key, value, configuration)

    def add_child(
        self,
        parent_type: Optional[SchemaEntityType],
        parent_path: Sequence[str],
        child: SchemaEntity,
    ) -> SchemaEntity:
        """
        Place ``child`` under a parent, replacing a same-named child of the
        same type. The replaced entity's own children are kept.
        """
        if child.entity_type.parent_type != parent_type:
            raise ValueError(
                f"{child.entity_type.value} cannot be a child of "
                f"{parent_type.value if parent_type else 'the root'}"
            )
        if parent_type is not None:
            parent_path = validate_path(parent_type, parent_path)
            self.get_or_create(parent_type, parent_path)
        else:
            parent_path = ()
        path = validate_path(child.entity_type, tuple(parent_path) + (child.name,))
        stored = child.copy()
        self._entities[(child.entity_type, path)] = stored
        self._link(child.entity_type, path)
        return stored

    def children(
        self,
        entity_type: Optional[SchemaEntityType],
        path: Sequence[str],
        child_type: Optional[SchemaEntityType] = None,
    ) -> List[Tuple[EntityPath, SchemaEntity]]:
        """Children of an entity (or of the root), in deterministic order."""
        parent_key = (entity_type, tuple(path)) if entity_type is not None else None
        result = [
            (key[1], self._entities[key])
            for key in self._children.get(parent_key, {})
            if child_type is None or key[0] == child_type
        ]
        result.sort(key=lambda item: item[1])
        return result

    def walk(
        self,
        entity_type: Optional[SchemaEntityType] = None,
        path: Sequence[str] = (),
    ) -> Iterator[Tuple[EntityPath, SchemaEntity]]:
        """Depth-first, pre-order traversal below (and including) an entity."""
        if entity_type is not None:
            entity = self.find(entity_type, path)
            if entity is None:
                return
            yield tuple(path), entity
        for child_path, child in self.children(entity_type, path):
            yield from self.walk(child.entity_type, child_path)


def namespace_path(namespace: str) -> EntityPath:
    return (namespace,)


def table_path(namespace: str, table: str) -> EntityPath:
    return (namespace, table)


def family_path(namespace: str, table: str, family: str) -> EntityPath:
    return (namespace, table, family)


def column_path(namespace: str, table: str, family: str, qualifier: bytes) -> EntityPath:
    return (namespace, table, family, qualifier_to_name(qualifier))


def _int_or_none(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


@dataclass
class ColumnDefinition:
    """Administrator-declared constraint for one column qualifier."""

    qualifier: bytes
    column_length: Optional[int] = None
    validation_regex: Optional[str] = None
    configuration: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.qualifier, str):
            self.qualifier = self.qualifier.encode("utf-8")
        if not self.qualifier:
            raise ValueError("ColumnDefinition requires a non-empty qualifier")
        if self.column_length is not None and self.column_length < 0:
            raise ValueError("column_length must not be negative")
        if self.validation_regex:
            try:
                re.compile(self.validation_regex)
            except re.error as e:
                raise ValueError(f"Invalid validation_regex {self.validation_regex!r}: {e}") from e

    @property
    def name(self) -> str:
        return qualifier_to_name(self.qualifier)

    def to_values(self) -> Dict[str, Optional[str]]:
        """Engine attributes describing this definition (None = unset)."""
        return {
            COLUMN_LENGTH: str(self.column_length) if self.column_length is not None else None,
            COLUMN_VALIDATION_REGEX: self.validation_regex or None,
        }

    @classmethod
    def from_entity(cls, entity: SchemaEntity) -> "ColumnDefinition":
        return cls(
            name_to_qualifier(entity.name),
            column_length=_int_or_none(entity.values.get(COLUMN_LENGTH)),
            validation_regex=entity.values.get(COLUMN_VALIDATION_REGEX) or None,
            configuration=dict(entity.configuration),
        )


@dataclass
class ColumnAuditor:
    """Observed facts about one column qualifier."""

    qualifier: bytes
    max_value_length: int = 0
    column_occurrences: int = 0
    cell_occurrences: int = 0
    alias: Optional[int] = None
    configuration: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return qualifier_to_name(self.qualifier)

    @classmethod
    def from_entity(cls, entity: SchemaEntity) -> "ColumnAuditor":
        return cls(
            name_to_qualifier(entity.name),
            max_value_length=_int_or_none(entity.values.get(MAX_VALUE_LENGTH)) or 0,
            column_occurrences=_int_or_none(entity.values.get(COLUMN_OCCURRENCES)) or 0,
            cell_occurrences=_int_or_none(entity.values.get(CELL_OCCURRENCES)) or 0,
            alias=_int_or_none(entity.values.get(COLUMN_ALIAS)),
            configuration=dict(entity.configuration),
        )
