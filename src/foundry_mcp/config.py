"""
Configuration loading for Foundry MCP.

Loads YAML configuration files and environment variables.

Supports multiple configuration sources with the following priority:
1. Environment variables (FOUNDRY_CREDENTIALS_PATH, FOUNDRY_AUDIT_DIR) - highest priority
2. Server settings (from config/settings.yaml)
3. Built-in defaults - lowest priority
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path.home() / ".servicenow" / "credentials.json"

DEFAULT_SETTINGS: dict[str, dict[str, Any]] = {
    "http": {
        "timeout": 30.0,
    },
    "retry": {
        "max_retries": 3,
        "initial_delay": 1.0,
        "max_delay": 30.0,
        "multiplier": 2.0,
    },
    "script": {
        "default_timeout": 30,
        "max_timeout": 120,
        "poll_delay": 2.0,
    },
    "query": {
        "default_limit": 50,
        "max_limit": 500,
    },
}


class Config:
    """Configuration manager for Foundry MCP.

    Settings come from config/settings.yaml merged over built-in defaults.
    The credential profile store and audit directory can be relocated with
    environment variables:
      - FOUNDRY_CREDENTIALS_PATH: Path to the credential profile file
      - FOUNDRY_AUDIT_DIR: Directory for audit logs
    """

    def __init__(self, config_dir: Path | None = None):
        """Initialize configuration from YAML files and environment.

        Args:
            config_dir: Path to config directory. Defaults to FOUNDRY_CONFIG_DIR
                or the project config/.
        """
        load_dotenv()

        if config_dir is None:
            env_dir = os.getenv("FOUNDRY_CONFIG_DIR")
            if env_dir:
                config_dir = Path(env_dir)
            else:
                # __file__ = src/foundry_mcp/config.py
                project_root = Path(__file__).parent.parent.parent
                config_dir = project_root / "config"

        self.config_dir = config_dir
        self._settings: dict[str, Any] = {}

        self._load_configs()

    def _load_configs(self) -> None:
        """Load all YAML configuration files."""
        self._settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict[str, Any]:
        """Load a YAML file from the config directory.

        Args:
            filename: Name of the YAML file to load.

        Returns:
            Parsed YAML content as a dictionary.
        """
        filepath = self.config_dir / filename
        if not filepath.exists():
            return {}

        with filepath.open() as f:
            return yaml.safe_load(f) or {}

    def _section(self, name: str) -> dict[str, Any]:
        """Merge a settings section over its defaults."""
        return {
            **DEFAULT_SETTINGS.get(name, {}),
            **(self._settings.get(name) or {}),
        }

    @property
    def http_settings(self) -> dict[str, Any]:
        """Get HTTP transport settings."""
        return self._section("http")

    @property
    def retry_settings(self) -> dict[str, Any]:
        """Get retry/backoff settings for the transport client."""
        return self._section("retry")

    @property
    def script_settings(self) -> dict[str, Any]:
        """Get background script execution settings."""
        return self._section("script")

    @property
    def query_settings(self) -> dict[str, Any]:
        """Get table query settings."""
        return self._section("query")

    @property
    def credentials_path(self) -> Path:
        """Get the credential profile store location."""
        env_path = os.getenv("FOUNDRY_CREDENTIALS_PATH")
        if env_path:
            return Path(env_path).expanduser()
        configured = self._settings.get("credentials_path")
        if configured:
            return Path(configured).expanduser()
        return DEFAULT_CREDENTIALS_PATH

    @property
    def audit_dir(self) -> Path | None:
        """Get the audit log directory, or None for the default."""
        env_dir = os.getenv("FOUNDRY_AUDIT_DIR")
        if env_dir:
            return Path(env_dir).expanduser()
        configured = (self._settings.get("audit") or {}).get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return None


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        The Config singleton instance.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration from files.

    Returns:
        Fresh Config instance.
    """
    global _config
    _config = Config()
    logger.info(f"Configuration reloaded from {_config.config_dir}")
    return _config
