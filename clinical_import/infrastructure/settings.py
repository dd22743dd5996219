"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.
"""

from typing import Optional

from clinical_import.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    ImportConfig,
    LoggingConfig,
)

# Application metadata
APP_NAME = "Clinical-Import"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded lazily from the environment.

    Attributes are resolved on first access so that importing this module
    never fails because of a bad environment variable.
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self.app_name = APP_NAME
        self.app_version = APP_VERSION
        self._config_manager = config_manager

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def import_config(self) -> ImportConfig:
        return self.config_manager.get_import_config()

    @property
    def logging_config(self) -> LoggingConfig:
        return self.config_manager.get_logging_config()

    @property
    def batch_size(self) -> int:
        return self.import_config.batch_size

    @property
    def log_level(self) -> str:
        return self.logging_config.level

    def get_db_path(self) -> str:
        """Get database path; ':memory:' for an in-memory database."""
        return self.db_config.db_path

    def reload(self) -> None:
        """Drop cached configuration so the next access re-reads the environment."""
        self._config_manager = None


# Global settings instance
settings = Settings()
