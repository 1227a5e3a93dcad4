"""
Tests for colmgr.config module.
"""

import logging
import logging.handlers

import pytest

from colmgr.config import (
    DEFAULT_REPOSITORY_MAX_VERSIONS,
    GovernanceConfig,
    LoggingConfig,
    split_table_name,
)
from colmgr.exceptions import ConfigurationError
from colmgr.store.base import TableName


class TestSplitTableName:
    """Test table name parsing."""

    def test_qualified_name(self):
        assert split_table_name("ns:orders") == ("ns", "orders")

    def test_bare_name_uses_default_namespace(self):
        assert split_table_name("orders") == ("default", "orders")

    @pytest.mark.parametrize("name", [":orders", "ns:", ""])
    def test_invalid_names(self, name):
        with pytest.raises(ConfigurationError):
            split_table_name(name)


class TestGovernanceConfig:
    """Test GovernanceConfig defaults, parsing and inclusion rules."""

    def test_defaults(self):
        config = GovernanceConfig()
        assert config.activated is False
        assert config.included_tables is None
        assert config.excluded_tables is None
        assert config.repository_max_versions == DEFAULT_REPOSITORY_MAX_VERSIONS

    def test_camel_case_options(self):
        config = GovernanceConfig(
            activated=True, includedTables=["ns:*"], repositoryMaxVersions=7
        )
        assert config.included_tables == ["ns:*"]
        assert config.repository_max_versions == 7

    def test_comma_separated_tables(self):
        config = GovernanceConfig(activated=True, included_tables="ns:a, ns:b")
        assert config.included_tables == ["ns:a", "ns:b"]

    def test_invalid_max_versions(self):
        with pytest.raises(ValueError):
            GovernanceConfig(repository_max_versions=0)

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("COLMGR_ACTIVATED", "true")
        monkeypatch.setenv("COLMGR_REPOSITORY_MAX_VERSIONS", "12")
        config = GovernanceConfig()
        assert config.activated is True
        assert config.repository_max_versions == 12

    def test_not_activated_includes_nothing(self):
        config = GovernanceConfig(activated=False)
        assert not config.is_included_table("ns:orders")
        assert not config.is_included_namespace("ns")

    def test_everything_included_by_default(self):
        config = GovernanceConfig(activated=True)
        assert config.is_included_table("ns:orders")
        assert config.is_included_table(TableName("default", "orders"))

    def test_repository_namespace_never_included(self):
        config = GovernanceConfig(activated=True)
        assert not config.is_included_table("__colmgr:repository")
        assert not config.is_included_namespace("__colmgr")

    def test_wildcard_inclusion(self):
        config = GovernanceConfig(activated=True, included_tables=["ns:*"])
        assert config.is_included_table("ns:anyTable")
        assert not config.is_included_table("otherNs:anyTable")
        assert config.is_included_namespace("ns")
        assert not config.is_included_namespace("otherNs")

    def test_specific_table_inclusion(self):
        config = GovernanceConfig(activated=True, included_tables=["ns:a"])
        assert config.is_included_table("ns:a")
        assert not config.is_included_table("ns:b")
        assert config.is_included_namespace("ns")

    def test_exclusion(self):
        config = GovernanceConfig(activated=True, excluded_tables=["ns:a", "other:*"])
        assert not config.is_included_table("ns:a")
        assert config.is_included_table("ns:b")
        assert not config.is_included_table("other:x")
        assert config.is_included_namespace("ns")
        assert not config.is_included_namespace("other")

    def test_exclusion_ignored_when_inclusion_set(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = GovernanceConfig(
                activated=True, included_tables=["ns:a"], excluded_tables=["ns:a"]
            )
        assert config.is_included_table("ns:a")
        assert "excluded_tables will be ignored" in caplog.text

    def test_effective_user_name(self):
        assert GovernanceConfig(user_name="alice").effective_user_name == "alice"
        assert GovernanceConfig().effective_user_name

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "colmgr.yaml"
        config = GovernanceConfig(
            activated=True, included_tables=["ns:*"], repository_max_versions=5, user_name="bob"
        )
        config.to_yaml(path)

        loaded = GovernanceConfig.from_yaml(path)
        assert loaded.activated is True
        assert loaded.included_tables == ["ns:*"]
        assert loaded.repository_max_versions == 5
        assert loaded.user_name == "bob"

    def test_yaml_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOVERNED_NS", "sales")
        path = tmp_path / "colmgr.yaml"
        path.write_text("activated: true\nincludedTables:\n  - ${GOVERNED_NS}:*\n")

        config = GovernanceConfig.from_yaml(path)
        assert config.is_included_table("sales:orders")

    def test_yaml_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            GovernanceConfig.from_yaml(tmp_path / "missing.yaml")

    def test_yaml_invalid_values(self, tmp_path):
        path = tmp_path / "colmgr.yaml"
        path.write_text("repositoryMaxVersions: 0\n")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            GovernanceConfig.from_yaml(path)

    def test_summary(self):
        summary = GovernanceConfig(activated=True, user_name="carol").summary()
        assert summary["activated"] is True
        assert summary["user_name"] == "carol"


class TestLoggingConfig:
    """Test LoggingConfig.apply."""

    def test_apply_stream_handler(self):
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            LoggingConfig(level="DEBUG").apply()
            assert len(root.handlers) == len(before) + 1
            assert root.level == logging.DEBUG
        finally:
            for handler in root.handlers[len(before):]:
                root.removeHandler(handler)
            root.setLevel(level)

    def test_apply_file_handler(self, tmp_path):
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            LoggingConfig(file=str(tmp_path / "colmgr.log")).apply()
            added = root.handlers[len(before):]
            assert isinstance(added[0], logging.handlers.RotatingFileHandler)
        finally:
            for handler in root.handlers[len(before):]:
                root.removeHandler(handler)
                handler.close()
            root.setLevel(level)
