"""Repository engine: entity model, change ledger, aliases, validation."""

from .aliases import AliasTranslator
from .archive import SchemaArchive, archive_to_model, model_to_archive
from .entities import (
    ColumnAuditor,
    ColumnDefinition,
    EntityModel,
    SchemaEntity,
    SchemaEntityType,
)
from .ledger import ChangeEvent, ChangeLedger
from .monitor import ChangeEventMonitor
from .repository import DiscoveredColumn, Repository
from .synchronizer import SyncDiscrepancy, SyncDiscrepancyKind, SyncReport, Synchronizer
from .validation import ColumnViolation, EnforcementState, ValidationEngine

__all__ = [
    "AliasTranslator",
    "ChangeEvent",
    "ChangeEventMonitor",
    "ChangeLedger",
    "ColumnAuditor",
    "ColumnDefinition",
    "ColumnViolation",
    "DiscoveredColumn",
    "EnforcementState",
    "EntityModel",
    "Repository",
    "SchemaArchive",
    "SchemaEntity",
    "SchemaEntityType",
    "SyncDiscrepancy",
    "SyncDiscrepancyKind",
    "SyncReport",
    "Synchronizer",
    "ValidationEngine",
    "archive_to_model",
    "model_to_archive",
]
