from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

CONFIG_ENV = "CFOPS_CONFIG"
PLUGIN_DIR_ENV = "CFOPS_PLUGIN_DIR"
DEFAULT_CONFIG_PATH = "./configs/config.yaml"


class CfopsBaseModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class HostingConfig(CfopsBaseModel):
    startup_timeout_seconds: float = Field(default=30.0, gt=0)
    call_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    kill_grace_seconds: float = Field(default=2.0, gt=0)
    accept_timeout_seconds: float = Field(default=60.0, gt=0)
    forward_stdout: bool = Field(default=True)
    max_message_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)


class PluginsConfig(CfopsBaseModel):
    directory: str = Field(default="./plugins", validate_default=True)
    metadata_timeout_seconds: float = Field(default=10.0, gt=0)
    hosting: HostingConfig = Field(default_factory=HostingConfig)

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, value: str) -> str:
        if not value:
            raise ValueError("plugins.directory must be a non-empty string")
        return str(Path(value))


class LoggingConfig(CfopsBaseModel):
    level: str = Field(default="INFO")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        name = str(value or "").upper()
        if not isinstance(logging.getLevelName(name), int):
            raise ValueError(f"logging.level must be a standard level name, got {value!r}")
        return name


class CfopsConfig(CfopsBaseModel):
    env: str = Field(default="dev")
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        if not value:
            raise ValueError("env must be a non-empty string")
        return value

    def dump(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def load_config(path: Optional[str] = None) -> CfopsConfig:
    """Load YAML config; a missing file yields the defaults.

    ``$CFOPS_CONFIG`` picks the file when ``path`` is not given and
    ``$CFOPS_PLUGIN_DIR`` overrides ``plugins.directory``.
    """
    config_path = Path(path or os.getenv(CONFIG_ENV) or DEFAULT_CONFIG_PATH)
    data: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path} must contain a mapping at the top level")
        data = loaded
    plugin_dir = os.getenv(PLUGIN_DIR_ENV)
    if plugin_dir:
        plugins = data.get("plugins") if isinstance(data.get("plugins"), dict) else {}
        data["plugins"] = {**plugins, "directory": plugin_dir}
    return CfopsConfig.model_validate(data)
