"""
Exception classes for colmgr.
"""

from typing import Any, Dict, Optional


class ColmgrError(Exception):
    """Base exception for all colmgr errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(ColmgrError):
    """Raised when there's an error in configuration."""

    pass


class StoreError(ColmgrError):
    """Raised when the underlying column store fails an operation."""

    pass


class NamespaceNotFoundError(StoreError):
    """Raised when a namespace does not exist in the store."""

    def __init__(self, namespace: str) -> None:
        super().__init__(f"Namespace not found: {namespace}")
        self.namespace = namespace


class NamespaceExistsError(StoreError):
    """Raised when creating a namespace that already exists."""

    def __init__(self, namespace: str) -> None:
        super().__init__(f"Namespace already exists: {namespace}")
        self.namespace = namespace


class TableNotFoundError(StoreError):
    """Raised when a table does not exist in the store."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table not found: {table}")
        self.table = table


class TableExistsError(StoreError):
    """Raised when creating a table that already exists."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table already exists: {table}")
        self.table = table


class RepositoryError(ColmgrError):
    """Raised when the repository cannot read or persist its own metadata."""

    pass


class AuditBookkeepingError(RepositoryError):
    """Raised when a write was delegated but its audit bookkeeping failed."""

    def __init__(self, table: str, cause: Optional[Exception] = None) -> None:
        super().__init__(
            f"Audit bookkeeping failed for write to table '{table}'",
            {"table": table},
            cause,
        )
        self.table = table


class TableNotIncludedError(ColmgrError):
    """Raised when an operation targets a table outside the governance scope."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table is not included in column manager processing: {table}")
        self.table = table


class ColumnManagerError(ColmgrError):
    """Base class for column enforcement and aliasing rejections."""

    pass


class ColumnDefinitionNotFoundError(ColumnManagerError):
    """Raised when an enforced family receives a qualifier with no definition."""

    def __init__(
        self,
        table: str,
        family: str,
        qualifier: bytes,
        row: Optional[bytes] = None,
    ) -> None:
        details: Dict[str, Any] = {"table": table, "family": family}
        if row is not None:
            details["row"] = row
        super().__init__(
            f"No ColumnDefinition found for qualifier {qualifier!r}", details
        )
        self.table = table
        self.family = family
        self.qualifier = qualifier
        self.row = row


class ColumnValueInvalidError(ColumnManagerError):
    """Raised when a value violates its ColumnDefinition's length or pattern."""

    LENGTH = "length"
    PATTERN = "pattern"

    def __init__(
        self,
        table: str,
        family: str,
        qualifier: bytes,
        value: bytes,
        reason: str,
        row: Optional[bytes] = None,
    ) -> None:
        details: Dict[str, Any] = {"table": table, "family": family, "reason": reason}
        if row is not None:
            details["row"] = row
        super().__init__(
            f"Invalid value submitted for column {qualifier!r} ({reason})", details
        )
        self.table = table
        self.family = family
        self.qualifier = qualifier
        self.value = value
        self.reason = reason
        self.row = row


class AliasingAlreadyInUseError(ColumnManagerError):
    """Raised when enabling aliases on a family that already holds data."""

    def __init__(self, table: str, family: str) -> None:
        super().__init__(
            f"Column aliasing cannot be enabled on non-empty family '{family}'",
            {"table": table},
        )
        self.table = table
        self.family = family


class AliasNotFoundError(ColumnManagerError):
    """Raised when a stored key is neither a known alias nor a printable qualifier."""

    def __init__(self, table: str, family: str, raw_key: bytes) -> None:
        super().__init__(
            f"Unrecognized column key {raw_key!r} in aliased family '{family}'",
            {"table": table},
        )
        self.table = table
        self.family = family
        self.raw_key = raw_key


class SchemaArchiveError(ColmgrError):
    """Raised when a schema archive cannot be encoded or decoded."""

    pass
