"""
Configuration system for colmgr using Pydantic.

A GovernanceConfig is handed to ``colmgr.connect`` when a session is built;
nothing here is process-global, so differently configured sessions can live
side by side in one interpreter.
"""

import getpass
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
REPOSITORY_NAMESPACE = "__colmgr"
DEFAULT_REPOSITORY_MAX_VERSIONS = 50
WILDCARD = "*"

# Option names as they appear in hbase-style configuration files
_CAMEL_CASE_OPTIONS = {
    "includedTables": "included_tables",
    "excludedTables": "excluded_tables",
    "repositoryMaxVersions": "repository_max_versions",
    "userName": "user_name",
    "multiplexerQueueSize": "multiplexer_queue_size",
}


def split_table_name(name: str) -> Tuple[str, str]:
    """Split ``namespace:table`` into its parts, defaulting the namespace."""
    if ":" in name:
        namespace, _, qualifier = name.partition(":")
    else:
        namespace, qualifier = DEFAULT_NAMESPACE, name
    if not namespace or not qualifier:
        raise ConfigurationError(f"Invalid table name: '{name}'")
    return namespace, qualifier


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")

    def apply(self) -> None:
        """Install a handler on the root logger according to this config."""
        if self.file:
            handler: logging.Handler = logging.handlers.RotatingFileHandler(
                self.file, maxBytes=self.max_size, backupCount=self.backup_count
            )
        else:
            handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(self.format))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(self.level)


class RedisStoreConfig(BaseModel):
    """Connection settings for the Redis-backed column store."""

    host: str = Field("localhost", description="Redis host")
    port: int = Field(6379, description="Redis port")
    db: int = Field(0, description="Redis database number")
    password: Optional[str] = Field(None, description="Redis password")
    key_prefix: str = Field("colmgr", description="Prefix for every key the store writes")


class GovernanceConfig(BaseSettings):
    """Configuration consumed by the repository engine and write interceptor."""

    activated: bool = Field(False, description="Enable column manager processing")
    included_tables: Optional[Union[List[str], str]] = Field(
        None, description="Tables included for processing (ns:table or ns:*)"
    )
    excluded_tables: Optional[Union[List[str], str]] = Field(
        None, description="Tables excluded from processing (ns:table or ns:*)"
    )
    repository_max_versions: int = Field(
        DEFAULT_REPOSITORY_MAX_VERSIONS,
        description="Change events retained per entity attribute",
    )
    user_name: Optional[str] = Field(
        None, description="Actor recorded on change events"
    )
    multiplexer_queue_size: int = Field(
        10000, description="Buffered puts per multiplexer before puts are refused"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="COLMGR_",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case_names(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for camel, snake in _CAMEL_CASE_OPTIONS.items():
                if camel in data and snake not in data:
                    data[snake] = data.pop(camel)
        return data

    @field_validator("included_tables", "excluded_tables", mode="before")
    @classmethod
    def split_table_lists(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, list):
            for entry in v:
                split_table_name(entry)
        return v

    @field_validator("repository_max_versions")
    @classmethod
    def validate_max_versions(cls, v: int) -> int:
        if v < 1:
            raise ValueError("repository_max_versions must be at least 1")
        return v

    @field_validator("multiplexer_queue_size")
    @classmethod
    def validate_queue_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("multiplexer_queue_size must be at least 1")
        return v

    @model_validator(mode="after")
    def warn_on_ignored_excludes(self) -> "GovernanceConfig":
        if self.included_tables is not None and self.excluded_tables:
            logger.warning(
                "Both included_tables and excluded_tables are set; "
                "excluded_tables will be ignored"
            )
        return self

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GovernanceConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Expand environment variables in the data
            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(exclude_none=True), f, default_flow_style=False, indent=2
            )

    @property
    def effective_user_name(self) -> str:
        """User name recorded on change events."""
        if self.user_name:
            return self.user_name
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return "unknown"

    def _table_specs(self, tables: Optional[Union[List[str], str]]) -> List[Tuple[str, str]]:
        if tables is None:
            return []
        if isinstance(tables, str):
            tables = [tables]
        return [split_table_name(entry) for entry in tables]

    def is_included_table(self, table: Any) -> bool:
        """
        Decide whether a table falls inside the governance scope.

        Args:
            table: A TableName or a ``namespace:table`` string

        Returns:
            True when the engine is activated and the table is included
        """
        if not self.activated:
            return False
        namespace, qualifier = split_table_name(str(table))
        if namespace == REPOSITORY_NAMESPACE:
            return False

        if self.included_tables is not None:
            return any(
                ns == namespace and (tbl == WILDCARD or tbl == qualifier)
                for ns, tbl in self._table_specs(self.included_tables)
            )
        return not any(
            ns == namespace and (tbl == WILDCARD or tbl == qualifier)
            for ns, tbl in self._table_specs(self.excluded_tables)
        )

    def is_included_namespace(self, namespace: str) -> bool:
        """Decide whether a namespace may hold included tables."""
        if not self.activated or namespace == REPOSITORY_NAMESPACE:
            return False
        if self.included_tables is not None:
            return any(
                ns == namespace for ns, _ in self._table_specs(self.included_tables)
            )
        return not any(
            ns == namespace and tbl == WILDCARD
            for ns, tbl in self._table_specs(self.excluded_tables)
        )

    def summary(self) -> Dict[str, Any]:
        """Configuration summary suitable for logging."""
        return {
            "activated": self.activated,
            "included_tables": self.included_tables,
            "excluded_tables": self.excluded_tables,
            "repository_max_versions": self.repository_max_versions,
            "user_name": self.effective_user_name,
        }
