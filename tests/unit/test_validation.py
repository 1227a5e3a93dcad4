"""
Tests for colmgr.repository.validation module.
"""

import pytest

from colmgr.exceptions import ColumnDefinitionNotFoundError, ColumnValueInvalidError
from colmgr.repository.entities import ColumnDefinition
from colmgr.repository.validation import (
    UNDEFINED,
    ColumnViolation,
    EnforcementState,
    ValidationEngine,
)
from colmgr.store.base import Put


@pytest.fixture
def engine():
    return ValidationEngine()


@pytest.fixture
def definitions():
    return {
        b"COLQUALIFIER01": ColumnDefinition(b"COLQUALIFIER01", column_length=20),
        b"COLQUALIFIER02": ColumnDefinition(b"COLQUALIFIER02", validation_regex="https?://.*"),
        b"COLQUALIFIER03": ColumnDefinition(b"COLQUALIFIER03"),
    }


class TestValidationEngine:
    """Test the enforcement rules."""

    def test_enforcement_state(self):
        assert EnforcementState.of(True) is EnforcementState.ENFORCED
        assert EnforcementState.of(False) is EnforcementState.UNENFORCED

    def test_undefined_qualifier(self, engine, definitions):
        assert engine.check(definitions, b"bad_qualifier", b"x") == UNDEFINED

    def test_length_limit(self, engine, definitions):
        assert engine.check(definitions, b"COLQUALIFIER01", b"x" * 20) is None
        assert engine.check(definitions, b"COLQUALIFIER01", b"x" * 82) == ColumnValueInvalidError.LENGTH

    def test_pattern(self, engine, definitions):
        assert engine.check(definitions, b"COLQUALIFIER02", b"http://google.com") is None
        assert engine.check(definitions, b"COLQUALIFIER02", b"https://google.com") is None
        assert (
            engine.check(definitions, b"COLQUALIFIER02", b"ftp://google.com")
            == ColumnValueInvalidError.PATTERN
        )

    def test_pattern_must_match_whole_value(self, engine, definitions):
        assert (
            engine.check(definitions, b"COLQUALIFIER02", b"see http://google.com")
            == ColumnValueInvalidError.PATTERN
        )

    def test_invalid_utf8_value_checked_as_text(self, engine, definitions):
        assert (
            engine.check(definitions, b"COLQUALIFIER02", b"http://\xff")
            is None
        )

    def test_unconstrained_definition(self, engine, definitions):
        assert engine.check(definitions, b"COLQUALIFIER03", b"anything" * 100) is None

    def test_find_violations_reports_every_entry(self, engine, definitions):
        put = (
            Put(b"row1")
            .add_column("cf", b"bad_qualifier", b"v")
            .add_column("cf", b"COLQUALIFIER01", b"x" * 82)
            .add_column("cf", b"COLQUALIFIER03", b"fine")
            .add_column("free", b"whatever", b"v")
        )
        violations = engine.find_violations("ns:t", put, {"cf": definitions})
        assert violations == [
            ColumnViolation("ns:t", b"row1", "cf", b"bad_qualifier", b"v", UNDEFINED),
            ColumnViolation(
                "ns:t", b"row1", "cf", b"COLQUALIFIER01", b"x" * 82, ColumnValueInvalidError.LENGTH
            ),
        ]

    def test_validate_put_raises_first_violation(self, engine, definitions):
        put = (
            Put(b"row1")
            .add_column("cf", b"COLQUALIFIER01", b"ok")
            .add_column("cf", b"bad_qualifier", b"v")
        )
        with pytest.raises(ColumnDefinitionNotFoundError) as exc_info:
            engine.validate_put("ns:t", put, {"cf": definitions})
        assert exc_info.value.qualifier == b"bad_qualifier"

    def test_validate_put_value_error(self, engine, definitions):
        put = Put(b"row1").add_column("cf", b"COLQUALIFIER02", b"ftp://google.com")
        with pytest.raises(ColumnValueInvalidError) as exc_info:
            engine.validate_put("ns:t", put, {"cf": definitions})
        assert exc_info.value.reason == ColumnValueInvalidError.PATTERN

    def test_unenforced_family_not_checked(self, engine, definitions):
        put = Put(b"row1").add_column("other", b"bad_qualifier", b"v")
        engine.validate_put("ns:t", put, {"cf": definitions})
