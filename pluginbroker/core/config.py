"""Configuration management with reload support."""

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PluginEntry(BaseModel):
    """A plugin declared in configuration."""

    title: str
    url: str


class BrokerConfig(BaseSettings):
    """Broker configuration with environment variable support."""

    # Application
    app_name: str = Field(default="Plugin Broker", alias="APP_NAME")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")
    rich_console: bool = Field(default=False, alias="RICH_CONSOLE")

    # Protocol
    max_payload_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_PAYLOAD_BYTES")

    # Only the in-process simulated provider forwards transaction events
    execution_provider: str = Field(default="vm", alias="EXECUTION_PROVIDER")

    # WebSocket gateway
    ws_host: str = Field(default="127.0.0.1", alias="WS_HOST")
    ws_port: int = Field(default=8765, alias="WS_PORT")
    ws_path: str = Field(default="/plugins", alias="WS_PATH")

    # Declared plugins
    plugins: List[PluginEntry] = Field(default_factory=list, alias="PLUGINS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def from_toml(cls, toml_path: Path) -> "BrokerConfig":
        """Load configuration from a TOML file.

        Tables are flattened (``[logging] level`` becomes ``log_level``); the
        ``[[plugins]]`` array is passed through as-is. Environment variables
        still override values that are absent from the file.
        """
        data: Dict[str, Any] = {}
        if toml_path.exists():
            with open(toml_path, "rb") as f:
                raw = tomllib.load(f)
            plugins = raw.pop("plugins", None)
            _flatten_toml(raw, data, prefix="")
            if plugins is not None:
                data["plugins"] = plugins
        return cls(**data)

    def effective_log_level(self) -> str:
        """Log level to apply; debug mode forces DEBUG."""
        return "DEBUG" if self.debug else self.log_level

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"


def _flatten_toml(data: Dict[str, Any], result: Dict[str, Any], prefix: str = "") -> None:
    """Flatten nested TOML tables to field names."""
    for key, value in data.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            _flatten_toml(value, result, full_key)
            continue

        field_name = full_key.lower().replace("-", "_")
        # [logging].level -> log_level, [logging].file -> log_file
        if field_name.startswith("logging_"):
            field_name = "log_" + field_name[len("logging_"):]
        # [app].name -> app_name, [app].debug -> debug
        elif field_name == "app_debug":
            field_name = "debug"
        result[field_name] = value


class ConfigManager:
    """Configuration manager with reload callbacks."""

    def __init__(self) -> None:
        self._config: Optional[BrokerConfig] = None
        self._config_path: Optional[Path] = None
        self._callbacks: list = []

    def load(self, config_path: Optional[str] = None) -> BrokerConfig:
        """Load configuration from a TOML file or the environment."""
        if config_path is None:
            config_path = os.environ.get("PLUGINBROKER_CONFIG")
        self._config_path = Path(config_path) if config_path else None

        if self._config_path and self._config_path.exists():
            self._config = BrokerConfig.from_toml(self._config_path)
        else:
            self._config = BrokerConfig()
        return self._config

    def reload(self) -> BrokerConfig:
        """Reload configuration and notify callbacks."""
        old_config = self._config
        self.load(str(self._config_path) if self._config_path else None)

        for callback in self._callbacks:
            callback(old_config, self._config)

        return self._config

    def register_reload_callback(self, callback) -> None:
        """Register a callback to be called when config is reloaded."""
        self._callbacks.append(callback)

    def get(self) -> BrokerConfig:
        """Get the current configuration."""
        if self._config is None:
            self._config = self.load()
        return self._config


_config_manager = ConfigManager()


@lru_cache()
def get_config() -> BrokerConfig:
    """Get the global configuration instance."""
    return _config_manager.get()


def reload_config() -> BrokerConfig:
    """Reload the global configuration."""
    get_config.cache_clear()
    return _config_manager.reload()
