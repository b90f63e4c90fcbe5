#!/usr/bin/env python3
"""
Configuration management for the resource ingestor.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values from the entry points. Components never
read this module themselves: main.py builds them with explicit values.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access noise is only useful when debugging the HTTP layer
    getLogger("aiohttp").setLevel(level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("Ingestor")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "Ingestor.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "cache", "news")

    Returns:
        A logger instance with the unified configuration

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'Ingestor.mymodule - INFO - This will appear...'")
    """
    return getLogger(f"Ingestor.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the resource ingestor.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. ingest.yaml thresholds (if present)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables
    - ingest.yaml thresholds override the environment-derived defaults

    Example ingest.yaml format:
    ```yaml
    thresholds:
      cache_ttl_seconds: 3600
      rate_limit_threshold: 25
      max_fetch_failures: 25
    ```
    """

    # Maps ingest.yaml threshold keys to (attribute, minimum value)
    THRESHOLD_KEYS = {
        'cache_ttl_seconds': ('CACHE_TTL_SECONDS', 0),
        'http_timeout': ('HTTP_TIMEOUT', 1),
        'rate_limit_window_seconds': ('RATE_LIMIT_WINDOW_SECONDS', 1),
        'rate_limit_threshold': ('RATE_LIMIT_THRESHOLD', 1),
        'max_fetch_failures': ('MAX_FETCH_FAILURES', 0),
        'feed_fetch_interval_seconds': ('FEED_FETCH_INTERVAL_SECONDS', 0),
        'links_batch_size': ('LINKS_BATCH_SIZE', 1),
        'feeds_batch_size': ('FEEDS_BATCH_SIZE', 1),
        'news_pool_limit': ('NEWS_POOL_LIMIT', 1),
    }

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_thresholds()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "ingest.db"))
        self.CACHE_PATH = environ.get("CACHE_PATH", path.join(self.DATA_PATH, "cache"))
        self.CACHE_ENABLED = environ.get("CACHE_ENABLED", "true").lower() != "false"
        self.CACHE_TTL_SECONDS = self._validate_positive_int("CACHE_TTL_SECONDS", 3600, 0)
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SETTINGS_FILE_PATH = environ.get("SETTINGS_FILE", path.join(base_dir, "ingest.yaml"))

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; ResourceIngestor/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 20, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Rate limiting configuration
        self.RATE_LIMIT_ENABLED = environ.get("RATE_LIMIT_ENABLED", "true").lower() != "false"
        self.RATE_LIMIT_WINDOW_SECONDS = self._validate_positive_int("RATE_LIMIT_WINDOW_SECONDS", 60, 1)
        self.RATE_LIMIT_THRESHOLD = self._validate_positive_int("RATE_LIMIT_THRESHOLD", 25, 1)
        self.RATE_LIMIT_SLEEP_MIN = self._validate_positive_float("RATE_LIMIT_SLEEP_MIN", 5.0, 0.0)
        self.RATE_LIMIT_SLEEP_MAX = self._validate_positive_float("RATE_LIMIT_SLEEP_MAX", 10.0, 0.0)
        if self.RATE_LIMIT_SLEEP_MAX < self.RATE_LIMIT_SLEEP_MIN:
            logger.warning("RATE_LIMIT_SLEEP_MAX is lower than RATE_LIMIT_SLEEP_MIN, using the minimum for both")
            self.RATE_LIMIT_SLEEP_MAX = self.RATE_LIMIT_SLEEP_MIN
        self.RATE_LIMIT_MAX_SLEEP = self._validate_positive_float("RATE_LIMIT_MAX_SLEEP", 10.0, 0.0)
        self.FETCH_LOG_RETENTION_HOURS = self._validate_positive_int("FETCH_LOG_RETENTION_HOURS", 24, 1)

        # Scheduling configuration
        self.MAX_FETCH_FAILURES = self._validate_positive_int("MAX_FETCH_FAILURES", 25, 0)
        self.FEED_FETCH_INTERVAL_SECONDS = self._validate_positive_int("FEED_FETCH_INTERVAL_SECONDS", 3600, 0)

        # Batch processing configuration
        self.LINKS_BATCH_SIZE = self._validate_positive_int("LINKS_BATCH_SIZE", 25, 1)
        self.FEEDS_BATCH_SIZE = self._validate_positive_int("FEEDS_BATCH_SIZE", 10, 1)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)
        self.BATCH_TIMEOUT = self._validate_positive_float("BATCH_TIMEOUT", 300.0, 1.0)

        # News selection
        self.NEWS_POOL_LIMIT = self._validate_positive_int("NEWS_POOL_LIMIT", 500, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        USER_AGENT: "Mozilla/5.0 (compatible; MyIngestor/1.0; +https://example.com)"

        # Backward-compatible: nested under `environment`
        # environment:
        #   USER_AGENT: "..."
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config
            logger.debug(f"Using top-level mapping from secrets file {secrets_file_path}")

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'settings')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_thresholds(self) -> None:
        """Apply the `thresholds` section of ingest.yaml over the environment defaults.

        Invalid values are logged and ignored; a missing file is not an error.
        """
        settings = self._safe_read_yaml(self.SETTINGS_FILE_PATH, 1024 * 1024, 'settings')
        if not isinstance(settings, dict):
            return
        thresholds = settings.get('thresholds')
        if not isinstance(thresholds, dict):
            logger.warning(f"No thresholds section in {self.SETTINGS_FILE_PATH}")
            return

        for key, raw in thresholds.items():
            if key not in self.THRESHOLD_KEYS:
                logger.warning(f"Unknown threshold '{key}' in {self.SETTINGS_FILE_PATH}; ignoring")
                continue
            attr, min_val = self.THRESHOLD_KEYS[key]
            try:
                value = int(str(raw).strip())
            except ValueError:
                logger.warning(f"Invalid {key} value '{raw}' in {self.SETTINGS_FILE_PATH}; keeping {getattr(self, attr)}")
                continue
            if value < min_val:
                logger.warning(f"{key} must be >= {min_val}; keeping {getattr(self, attr)} (got {raw})")
                continue
            setattr(self, attr, value)
        logger.info(f"Loaded thresholds from {self.SETTINGS_FILE_PATH}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "cache_path": self.CACHE_PATH,
            "cache_enabled": self.CACHE_ENABLED,
            "cache_ttl_seconds": self.CACHE_TTL_SECONDS,
            "http_timeout": self.HTTP_TIMEOUT,
            "rate_limit_enabled": self.RATE_LIMIT_ENABLED,
            "rate_limit": f"{self.RATE_LIMIT_THRESHOLD}/{self.RATE_LIMIT_WINDOW_SECONDS}s",
            "max_fetch_failures": self.MAX_FETCH_FAILURES,
            "feed_fetch_interval_seconds": self.FEED_FETCH_INTERVAL_SECONDS,
            "links_batch_size": self.LINKS_BATCH_SIZE,
            "feeds_batch_size": self.FEEDS_BATCH_SIZE,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
