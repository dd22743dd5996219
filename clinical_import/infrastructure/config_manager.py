"""Configuration Manager.

This module loads the configuration of the import pipeline: where the
clinical store lives, the default import options, and logging preferences.
Values come from environment variables (with ``.env`` support) or from a
JSON configuration file.

Security Impact:
    - Database paths are validated before a store is opened
    - Invalid option values fail fast instead of surfacing mid-import

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Domain services receive plain option values, never the manager itself
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from clinical_import.domain.enums import DuplicateStrategy, ValidationLevel
from clinical_import.domain.utils import parse_file_size

logger = logging.getLogger(__name__)

ENV_PREFIX = "CIMPORT_"
MEMORY_DB = ":memory:"


class DatabaseConfig(BaseModel):
    """Clinical store location.

    Parameters:
        db_type: Store type; only 'duckdb' is supported
        db_path: Path to the database file, or ':memory:'
        read_only: Open the database read-only (statistics only)
    """

    db_type: str = Field(default="duckdb", description="Database type")
    db_path: str = Field(default=MEMORY_DB, description="Path to database file")
    read_only: bool = Field(default=False, description="Open read-only")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() != "duckdb":
            raise ValueError(f"Unsupported database type: {v}. Supported: ['duckdb']")
        return v.lower()

    @field_validator("db_path", mode="before")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> str:
        """Validate that the database directory exists (the file may not yet)."""
        if not v or v == MEMORY_DB:
            return MEMORY_DB
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @property
    def in_memory(self) -> bool:
        return self.db_path == MEMORY_DB


class ImportConfig(BaseModel):
    """Default options of import runs."""

    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.SKIP
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)
    validation_level: ValidationLevel = ValidationLevel.STRICT
    batch_size: int = Field(default=1000, ge=1)

    @field_validator("max_file_size", mode="before")
    @classmethod
    def parse_size(cls, v: Any) -> Any:
        return parse_file_size(v) if isinstance(v, str) else v

    @field_validator("duplicate_strategy", "validation_level", mode="before")
    @classmethod
    def lower_case(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    json_format: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    return value if value not in (None, "") else None


def _env_flag(name: str) -> Optional[bool]:
    value = _env(name)
    return None if value is None else value.strip().lower() in ("1", "true", "yes", "on")


def _drop_unset(section: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in section.items() if v is not None}


class ConfigManager:
    """Configuration manager for the store location and import defaults.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        options = config.get_import_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional "database",
                "import" and "logging" sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._import_config: Optional[ImportConfig] = None
        self._logging_config: Optional[LoggingConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> "ConfigManager":
        """Load configuration from environment variables.

        Environment Variables:
            - CIMPORT_DB_PATH: Path to the DuckDB database file
            - CIMPORT_DB_READ_ONLY: Open the database read-only
            - CIMPORT_DUPLICATE_STRATEGY: skip, update or error
            - CIMPORT_MAX_FILE_SIZE: Maximum file size ("50MB" or bytes)
            - CIMPORT_VALIDATION_LEVEL: Validation level
            - CIMPORT_BATCH_SIZE: Observation batch size
            - CIMPORT_LOG_LEVEL: Logging level
            - CIMPORT_LOG_JSON: Emit JSON log lines

        Parameters:
            env_file: .env file to load; defaults to ``.env`` in the working directory

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        batch_size = _env("BATCH_SIZE")
        config_data = {
            "database": _drop_unset({
                "db_type": _env("DB_TYPE"),
                "db_path": _env("DB_PATH"),
                "read_only": _env_flag("DB_READ_ONLY"),
            }),
            "import": _drop_unset({
                "duplicate_strategy": _env("DUPLICATE_STRATEGY"),
                "max_file_size": _env("MAX_FILE_SIZE"),
                "validation_level": _env("VALIDATION_LEVEL"),
                "batch_size": int(batch_size) if batch_size else None,
            }),
            "logging": _drop_unset({
                "level": _env("LOG_LEVEL"),
                "json_format": _env_flag("LOG_JSON"),
            }),
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> "ConfigManager":
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_import_config(self) -> ImportConfig:
        if self._import_config is None:
            self._import_config = ImportConfig(**self._config_data.get("import", {}))
        return self._import_config

    def get_logging_config(self) -> LoggingConfig:
        if self._logging_config is None:
            self._logging_config = LoggingConfig(**self._config_data.get("logging", {}))
        return self._logging_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "import.batch_size")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment (in-memory DuckDB by default)."""
    return ConfigManager.from_environment().get_database_config()
