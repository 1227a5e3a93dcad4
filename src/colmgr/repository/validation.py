"""
Column definition enforcement.

Rules for an enforced family, evaluated in order, first failure wins:

1. the qualifier has a ColumnDefinition
2. the value is no longer than the definition's column length
3. the value, read as UTF-8 text, fully matches the validation pattern
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern

from ..exceptions import (
    ColumnDefinitionNotFoundError,
    ColumnManagerError,
    ColumnValueInvalidError,
)
from ..store.base import Put
from .entities import ColumnDefinition


logger = logging.getLogger(__name__)

UNDEFINED = "undefined"


class EnforcementState(str, Enum):
    """Column definition enforcement state of a family."""

    UNENFORCED = "unenforced"
    ENFORCED = "enforced"

    @classmethod
    def of(cls, enforced: bool) -> "EnforcementState":
        return cls.ENFORCED if enforced else cls.UNENFORCED


@dataclass(frozen=True)
class ColumnViolation:
    """A column entry rejected by enforcement, with its origin."""

    table: str
    row: bytes
    family: str
    qualifier: bytes
    value: bytes
    reason: str

    def to_error(self) -> ColumnManagerError:
        if self.reason == UNDEFINED:
            return ColumnDefinitionNotFoundError(
                self.table, self.family, self.qualifier, self.row
            )
        return ColumnValueInvalidError(
            self.table, self.family, self.qualifier, self.value, self.reason, self.row
        )


class ValidationEngine:
    """Checks column entries against ColumnDefinitions."""

    def __init__(self):
        self._patterns: Dict[str, Pattern] = {}

    def _pattern(self, regex: str) -> Pattern:
        pattern = self._patterns.get(regex)
        if pattern is None:
            pattern = re.compile(regex)
            self._patterns[regex] = pattern
        return pattern

    def check(
        self,
        definitions: Dict[bytes, ColumnDefinition],
        qualifier: bytes,
        value: bytes,
    ) -> Optional[str]:
        """
        Evaluate one column entry.

        Returns:
            None if accepted, otherwise the rejection reason
        """
        definition = definitions.get(qualifier)
        if definition is None:
            return UNDEFINED
        if definition.column_length is not None and len(value) > definition.column_length:
            return ColumnValueInvalidError.LENGTH
        if definition.validation_regex:
            text = value.decode("utf-8", "replace")
            if self._pattern(definition.validation_regex).fullmatch(text) is None:
                return ColumnValueInvalidError.PATTERN
        return None

    def find_violations(
        self,
        table: str,
        put: Put,
        enforced_definitions: Dict[str, Dict[bytes, ColumnDefinition]],
    ) -> List[ColumnViolation]:
        """
        Every violation in a put.

        Args:
            table: Table name used in the reports
            put: Put to check
            enforced_definitions: Definitions per enforced family; families
                absent from this mapping are not checked
        """
        violations = []
        for cell in put.cells:
            definitions = enforced_definitions.get(cell.family)
            if definitions is None:
                continue
            reason = self.check(definitions, cell.qualifier, cell.value)
            if reason is not None:
                violations.append(
                    ColumnViolation(table, put.row, cell.family, cell.qualifier, cell.value, reason)
                )
        return violations

    def validate_put(
        self,
        table: str,
        put: Put,
        enforced_definitions: Dict[str, Dict[bytes, ColumnDefinition]],
    ) -> None:
        """
        Raise the error for the first violating entry of a put.

        Raises:
            ColumnDefinitionNotFoundError: Undefined qualifier in an enforced family
            ColumnValueInvalidError: Value too long or not matching the pattern
        """
        for violation in self.find_violations(table, put, enforced_definitions):
            logger.debug(
                f"Rejected {violation.qualifier!r} in {table}:{violation.family} "
                f"({violation.reason})"
            )
            raise violation.to_error()
