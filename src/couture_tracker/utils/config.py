"""
Configuration management for Couture Tracker.

This module handles:
- Database path configuration
- Environment-specific configuration (development vs. production)
- Workflow limits (video upload size)
- Logging level
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .constants import (
    APP_NAME,
    APP_VERSION,
    DATABASE_FILENAME,
    DATABASE_VERSION,
    DEFAULT_DB_TIMEOUT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_VIDEO_SIZE,
    ENV_DATABASE_URL,
    ENV_DB_TIMEOUT,
    ENV_ENVIRONMENT,
    ENV_LOG_LEVEL,
    ENV_MAX_VIDEO_SIZE,
)

logger = logging.getLogger(__name__)

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Config:
    """
    Application configuration manager.

    Handles database location, environment settings and workflow limits.
    Values can be overridden through COUTURE_TRACKER_* environment variables;
    invalid overrides fall back to the default with a warning.
    """

    def __init__(self, environment: str = "production"):
        """
        Initialize configuration.

        Args:
            environment: Environment mode - 'production' or 'development'
        """
        self.environment = environment
        self._app_name = APP_NAME
        self._app_version = APP_VERSION
        self._database_version = DATABASE_VERSION

        if environment == "development":
            self._base_dir = self._get_project_data_dir()
        else:
            self._base_dir = self._get_user_data_dir()

        self._database_dir = self._base_dir
        self._database_path = self._database_dir / DATABASE_FILENAME
        self._database_url_override = os.environ.get(ENV_DATABASE_URL) or None

        self._db_timeout = self._read_positive_int(ENV_DB_TIMEOUT, DEFAULT_DB_TIMEOUT)
        self._max_video_size = self._read_positive_int(ENV_MAX_VIDEO_SIZE, DEFAULT_MAX_VIDEO_SIZE)
        self._log_level = self._read_log_level()

    def _get_project_data_dir(self) -> Path:
        """Project data/ directory used in development."""
        project_root = Path(__file__).parent.parent.parent.parent
        return project_root / "data"

    def _get_user_data_dir(self) -> Path:
        """Per-user application directory used in production."""
        return Path.home() / ".couture_tracker"

    def _read_positive_int(self, env_name: str, default: int) -> int:
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Invalid {env_name} value '{raw}', using default {default}")
            return default
        if value <= 0:
            logger.warning(f"Invalid {env_name} value '{raw}', using default {default}")
            return default
        return value

    def _read_log_level(self) -> str:
        raw = os.environ.get(ENV_LOG_LEVEL)
        if not raw:
            return DEFAULT_LOG_LEVEL
        level = raw.strip().upper()
        if level not in _VALID_LOG_LEVELS:
            logger.warning(
                f"Invalid {ENV_LOG_LEVEL} value '{raw}', using default {DEFAULT_LOG_LEVEL}"
            )
            return DEFAULT_LOG_LEVEL
        return level

    def ensure_directories(self):
        """Create the database directory if it doesn't exist."""
        self._database_dir.mkdir(parents=True, exist_ok=True)

    @property
    def app_name(self) -> str:
        """Application name."""
        return self._app_name

    @property
    def app_version(self) -> str:
        """Application version."""
        return self._app_version

    @property
    def database_version(self) -> str:
        """Database schema version."""
        return self._database_version

    @property
    def database_path(self) -> Path:
        """Full path to the database file."""
        return self._database_path

    @property
    def database_url(self) -> str:
        """
        SQLAlchemy database URL.

        COUTURE_TRACKER_DATABASE_URL takes precedence over the file path.
        """
        if self._database_url_override:
            return self._database_url_override
        db_path_str = str(self._database_path).replace("\\", "/")
        return f"sqlite:///{db_path_str}"

    @property
    def db_timeout(self) -> int:
        """SQLite busy timeout in seconds."""
        return self._db_timeout

    @property
    def max_video_size(self) -> int:
        """Largest accepted QA video upload, in bytes."""
        return self._max_video_size

    @property
    def log_level(self) -> str:
        """Root log level name."""
        return self._log_level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def database_exists(self) -> bool:
        """Check if the database file exists."""
        return self._database_path.exists()

    def __repr__(self) -> str:
        return f"Config(environment='{self.environment}', database_url='{self.database_url}')"


_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Once created, the singleton's environment cannot be changed by passing
    a different environment argument.

    Args:
        environment: Optional environment for initial creation. If None, uses
                    COUTURE_TRACKER_ENV or defaults to production.

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        if environment is None:
            environment = os.environ.get(ENV_ENVIRONMENT, "production")
        _config_instance = Config(environment)
    elif environment is not None and environment != _config_instance.environment:
        logger.warning(
            f"get_config() called with environment='{environment}' but singleton "
            f"already exists with environment='{_config_instance.environment}'. "
            f"Returning existing singleton."
        )

    return _config_instance


def reset_config():
    """Reset the global configuration instance (used by tests)."""
    global _config_instance
    _config_instance = None


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(
        level=getattr(logging, level or get_config().log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
