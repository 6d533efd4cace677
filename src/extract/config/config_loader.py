"""
Configuration loader for the extraction framework.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

from ..core.exceptions import ExtractConfigError
from ..runner.scheduler import SchedulerConfig


logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "state": {
        "backend": "sqlite",
        "pool_size": 5,
        "sqlite": {
            "db_path": "local/state/extract.db",
        },
        "sqlserver": {
            "host": "localhost",
            "port": 1433,
            "database": "Extract",
            "user": "sa",
            "schema": "extract",
            "driver": "ODBC Driver 18 for SQL Server",
        },
    },
    "scheduler": {
        "batch_size": 100,
        "idle_delay_ms": 1000,
        "reorg_margin": 1000,
        "max_workers": 4,
    },
    "extractors": [],
    "logging": {
        "level": "INFO",
        "structured": False,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ExtractConfig:
    """
    Configuration for the extraction framework.

    Loads a YAML configuration file on top of built-in defaults, then
    applies environment variable overrides (a .env file in the working
    directory is read first).
    """

    def __init__(self, config_path: Optional[Path] = None, load_env_file: bool = True):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
            load_env_file: Whether to read a .env file before applying overrides
        """
        self.config_path = Path(config_path) if config_path else None

        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))

        loaded = self._load_config() if self.config_path else {}
        self.config = _merge(DEFAULT_CONFIG, loaded)
        self._apply_env_overrides()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        with open(self.config_path, "r", encoding="utf-8") as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ExtractConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ExtractConfigError(f"Config root must be a mapping: {self.config_path}")
        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        state = self.config.setdefault("state", {})

        backend = os.environ.get("EXTRACT_DB_BACKEND")
        if backend:
            state["backend"] = backend

        sqlite_path = os.environ.get("EXTRACT_SQLITE_PATH")
        if sqlite_path:
            state.setdefault("sqlite", {})["db_path"] = sqlite_path

        sqlserver = state.setdefault("sqlserver", {})
        password = os.environ.get("EXTRACT_SQLSERVER_PASSWORD")
        if password:
            sqlserver["password"] = password
        conn_str = os.environ.get("EXTRACT_SQLSERVER_CONN_STR")
        if conn_str:
            sqlserver["connection_string"] = conn_str

        batch_size = os.environ.get("EXTRACT_BATCH_SIZE")
        if batch_size:
            try:
                self.config.setdefault("scheduler", {})["batch_size"] = int(batch_size)
            except ValueError:
                raise ExtractConfigError(
                    f"EXTRACT_BATCH_SIZE must be an integer, got {batch_size!r}"
                ) from None

        log_level = os.environ.get("EXTRACT_LOG_LEVEL")
        if log_level:
            self.config.setdefault("logging", {})["level"] = log_level

    def get_state_config(self) -> Dict[str, Any]:
        """Get status store configuration."""
        return self.config.get("state", {})

    def get_scheduler_config(self) -> SchedulerConfig:
        """Build the scheduler configuration."""
        section = self.config.get("scheduler", {})
        try:
            scheduler_config = SchedulerConfig(
                batch_size=int(section.get("batch_size", 100)),
                idle_delay_ms=int(section.get("idle_delay_ms", 1000)),
                reorg_margin=int(section.get("reorg_margin", 1000)),
                max_workers=int(section.get("max_workers", 4)),
            )
            pool_size = int(self.get_state_config().get("pool_size", 5))
        except (TypeError, ValueError) as e:
            raise ExtractConfigError(f"Invalid scheduler configuration: {e}") from e

        if scheduler_config.max_workers > pool_size:
            raise ExtractConfigError(
                f"scheduler.max_workers ({scheduler_config.max_workers}) must not exceed "
                f"state.pool_size ({pool_size})"
            )
        return scheduler_config

    def get_extractor_refs(self) -> List[str]:
        """Get extractor import references, in run order."""
        refs = self.config.get("extractors") or []
        if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
            raise ExtractConfigError("'extractors' must be a list of import references")
        return refs

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging", {})

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
