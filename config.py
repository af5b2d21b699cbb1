#!/usr/bin/env python3
"""
Configuration management for the feed ingestion pipeline.

This module centralizes logging setup and environment-driven settings.
Per-feed configuration and pipeline policy live in feeds.yaml and are loaded
by the feed registry; everything here comes from the process environment,
an optional .env file and an optional YAML secrets file.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create component loggers that inherit this configuration.
    """
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

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
        force=True
    )

    # Keep the Azure exporter quiet unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedIngest")

def get_logger(name: str):
    """Get a component logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "validator", "memory")

    Returns:
        A logger named "FeedIngest.{name}"
    """
    return getLogger(f"FeedIngest.{name}")

logger = _setup_global_logger()

class Config:
    """Environment-driven settings for the ingestion pipeline.

    Loading order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set), overriding both

    Invalid numeric values never abort startup: they are logged and replaced
    with their defaults. Only the feed document (feeds.yaml) is fatal when
    malformed, and that is handled by the registry.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

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

        # Storage and configuration files
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.FEEDS_FILE_SIZE_LIMIT_MB = self._validate_positive_int("FEEDS_FILE_SIZE_LIMIT_MB", 5, 1)

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedIngest/2.0; conflict-monitor RSS fetcher)")
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", 10.0, 1.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.URL_CHECK_TIMEOUT = self._validate_positive_float("URL_CHECK_TIMEOUT", 5.0, 0.5)
        self.URL_CHECK_ENABLED = environ.get("URL_CHECK_ENABLED", "true").lower() != "false"

        # Pacing between feeds and while the rate limiter refuses requests
        self.INTER_FEED_DELAY = self._validate_positive_float("INTER_FEED_DELAY", 1.0, 0.0)
        self.RATE_LIMIT_WAIT = self._validate_positive_float("RATE_LIMIT_WAIT", 5.0, 0.1)

        # Article processing configuration
        self.MAX_ITEMS_PER_FEED = self._validate_positive_int("MAX_ITEMS_PER_FEED", 50, 1)
        self.MAX_TITLE_CHARS = self._validate_positive_int("MAX_TITLE_CHARS", 500, 10)
        self.MAX_DESCRIPTION_CHARS = self._validate_positive_int("MAX_DESCRIPTION_CHARS", 2000, 100)
        self.SIMILARITY_THRESHOLD = self._validate_positive_float("SIMILARITY_THRESHOLD", 0.85, 0.5)
        self.SIMILARITY_WINDOW_DAYS = self._validate_positive_int("SIMILARITY_WINDOW_DAYS", 7, 1)

        # Batch and memory management
        self.BATCH_SIZE = self._validate_positive_int("BATCH_SIZE", 10, 1)
        self.INTER_BATCH_DELAY = self._validate_positive_float("INTER_BATCH_DELAY", 0.25, 0.0)
        self.GC_INTERVAL_BATCHES = self._validate_positive_int("GC_INTERVAL_BATCHES", 5, 1)
        self.MEMORY_THRESHOLD_MB = self._validate_positive_int("MEMORY_THRESHOLD_MB", 100, 16)
        self.MEMORY_CRITICAL_THRESHOLD_MB = self._validate_positive_int("MEMORY_CRITICAL_THRESHOLD_MB", 150, 16)
        if self.MEMORY_CRITICAL_THRESHOLD_MB < self.MEMORY_THRESHOLD_MB:
            logger.warning("MEMORY_CRITICAL_THRESHOLD_MB below MEMORY_THRESHOLD_MB; raising it to match")
            self.MEMORY_CRITICAL_THRESHOLD_MB = self.MEMORY_THRESHOLD_MB
        self.METRICS_BUFFER_SIZE = self._validate_positive_int("METRICS_BUFFER_SIZE", 100, 1)

        # Scheduler configuration
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "false").lower() == "true"

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML mapping and exports
        each key as an environment variable. Both a top-level mapping and a
        mapping nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        try:
            if not path.isfile(secrets_file_path):
                logger.warning(f"Secrets file not found at {secrets_file_path}")
                return

            if not access(secrets_file_path, R_OK):
                logger.error(f"No read permission for secrets file at {secrets_file_path}")
                return

            file_size = path.getsize(secrets_file_path)
            max_size = 2 * 1024 * 1024
            if file_size > max_size:
                logger.error(f"Secrets file too large: {file_size} bytes (limit: {max_size} bytes)")
                return

            with open(secrets_file_path, 'r') as f:
                secrets_config = yaml.safe_load(f)

            if not isinstance(secrets_config, dict):
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
                return

            env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

            secrets_loaded = 0
            for key, value in env_vars.items():
                if isinstance(key, str) and value is not None:
                    environ[key] = str(value)
                    secrets_loaded += 1
                else:
                    logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

            logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {secrets_file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading secrets file {secrets_file_path}: {e}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "url_check_enabled": self.URL_CHECK_ENABLED,
            "max_items_per_feed": self.MAX_ITEMS_PER_FEED,
            "batch_size": self.BATCH_SIZE,
            "memory_threshold_mb": self.MEMORY_THRESHOLD_MB,
            "memory_critical_threshold_mb": self.MEMORY_CRITICAL_THRESHOLD_MB,
            "similarity_threshold": self.SIMILARITY_THRESHOLD,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
