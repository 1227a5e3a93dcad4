"""
Schema archive codec.

Serializes the entity model, or one namespace or table of it, to a versioned
document (JSON or YAML) and reads it back. Importing an exported archive into
an empty model reproduces the original entities exactly.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import SchemaArchiveError
from ..store.base import TableName
from .entities import EntityModel, SchemaEntity, SchemaEntityType


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class ArchivedEntity(BaseModel):
    """One entity of an archive, with its children nested."""

    entity_type: SchemaEntityType = Field(..., description="Entity type")
    name: str = Field(..., description="Entity name (hex when hex_name is set)")
    hex_name: bool = Field(False, description="Name is hex-encoded raw bytes")
    values: Dict[str, str] = Field(default_factory=dict)
    configuration: Dict[str, str] = Field(default_factory=dict)
    children: List["ArchivedEntity"] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, entity: SchemaEntity) -> "ArchivedEntity":
        try:
            entity.name.encode("utf-8")
            name, hex_name = entity.name, False
        except UnicodeEncodeError:
            name, hex_name = entity.name.encode("utf-8", "surrogateescape").hex(), True
        return cls(
            entity_type=entity.entity_type,
            name=name,
            hex_name=hex_name,
            values=dict(entity.values),
            configuration=dict(entity.configuration),
        )

    def to_entity(self) -> SchemaEntity:
        name = self.name
        if self.hex_name:
            name = bytes.fromhex(self.name).decode("utf-8", "surrogateescape")
        return SchemaEntity(
            self.entity_type, name, dict(self.values), dict(self.configuration)
        )


class SchemaArchive(BaseModel):
    """Versioned schema export document."""

    format_version: int = Field(FORMAT_VERSION, description="Archive format version")
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Export time",
    )
    namespace: Optional[str] = Field(None, description="Namespace the export is scoped to")
    table: Optional[str] = Field(None, description="Table the export is scoped to")
    entities: List[ArchivedEntity] = Field(default_factory=list)

    @field_validator("format_version")
    @classmethod
    def validate_format_version(cls, v: int) -> int:
        if v != FORMAT_VERSION:
            raise ValueError(f"Unsupported archive format version: {v}")
        return v

    def to_json(self, indent: int = 2) -> str:
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "SchemaArchive":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise SchemaArchiveError(f"Invalid schema archive: {e}", cause=e) from e

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.model_dump(mode="json"), default_flow_style=False, sort_keys=False
        )

    @classmethod
    def from_yaml(cls, text: str) -> "SchemaArchive":
        try:
            data = yaml.safe_load(text) or {}
            return cls.model_validate(data)
        except yaml.YAMLError as e:
            raise SchemaArchiveError(f"Invalid YAML in schema archive: {e}", cause=e) from e
        except ValidationError as e:
            raise SchemaArchiveError(f"Invalid schema archive: {e}", cause=e) from e

    def save(self, path: Union[str, Path]) -> None:
        """Write the archive; ``.yaml``/``.yml`` files get YAML, others JSON."""
        path = Path(path)
        text = self.to_yaml() if path.suffix in (".yaml", ".yml") else self.to_json()
        path.write_text(text, encoding="utf-8")
        logger.info(f"Wrote schema archive to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SchemaArchive":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SchemaArchiveError(f"Schema archive not found: {path}", cause=e) from e
        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(text)
        return cls.from_json(text)

    def entity_count(self) -> int:
        def count(entities: List[ArchivedEntity]) -> int:
            return sum(1 + count(e.children) for e in entities)

        return count(self.entities)


def _archive_subtree(model: EntityModel, entity_type: SchemaEntityType, path) -> ArchivedEntity:
    archived = ArchivedEntity.from_entity(model.find(entity_type, path))
    archived.children = [
        _archive_subtree(model, child.entity_type, child_path)
        for child_path, child in model.children(entity_type, path)
    ]
    return archived


def model_to_archive(
    model: EntityModel,
    namespace: Optional[str] = None,
    table: Optional[str] = None,
) -> SchemaArchive:
    """
    Export the model, or the subtree of one namespace or table.

    A table-scoped export keeps its namespace entity as the root, holding
    only that table.
    """
    archive = SchemaArchive(namespace=namespace, table=table)
    if table is not None:
        name = TableName.value_of(table)
        archive.namespace, archive.table = name.namespace, str(name)
        ns_entity = model.find(SchemaEntityType.NAMESPACE, (name.namespace,))
        if ns_entity is None or model.find(
            SchemaEntityType.TABLE, (name.namespace, name.qualifier)
        ) is None:
            return archive
        root = ArchivedEntity.from_entity(ns_entity)
        root.children = [
            _archive_subtree(model, SchemaEntityType.TABLE, (name.namespace, name.qualifier))
        ]
        archive.entities = [root]
    elif namespace is not None:
        if model.find(SchemaEntityType.NAMESPACE, (namespace,)) is not None:
            archive.entities = [
                _archive_subtree(model, SchemaEntityType.NAMESPACE, (namespace,))
            ]
    else:
        archive.entities = [
            _archive_subtree(model, SchemaEntityType.NAMESPACE, ns_path)
            for ns_path, _ in model.children(None, ())
        ]
    return archive


def archive_to_model(archive: SchemaArchive, model: Optional[EntityModel] = None) -> EntityModel:
    """Load an archive into ``model`` (a new one by default)."""
    model = model if model is not None else EntityModel()

    def load(parent_type: Optional[SchemaEntityType], parent_path, archived: ArchivedEntity) -> None:
        entity = archived.to_entity()
        try:
            model.add_child(parent_type, parent_path, entity)
        except ValueError as e:
            raise SchemaArchiveError(f"Misplaced entity in archive: {e}", cause=e) from e
        path = tuple(parent_path) + (entity.name,)
        for child in archived.children:
            load(entity.entity_type, path, child)

    for entity in archive.entities:
        load(None, (), entity)
    return model

