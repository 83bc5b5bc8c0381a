# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
rpcreplay Configuration System

Configuration sources, lowest precedence first:
- Programmatic defaults
- ~/.rpcreplay/config.yaml
- .rpcreplay.yaml in the current directory
- An explicit config file
- Environment variables (RPCREPLAY_*)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger("rpcreplay.config")


# ============================================================================
# Configuration Models
# ============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Logging level")
    log_dir: Optional[Path] = Field(
        default=None, description="Directory for rotating log files"
    )
    file_output: bool = Field(default=False, description="Write logs to log_dir")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator("log_dir", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class RecorderConfig(BaseModel):
    """Recording configuration"""

    flush_each_entry: bool = Field(
        default=True, description="Flush the log stream after every entry"
    )


class ReplayerConfig(BaseModel):
    """Replay configuration"""

    verify_sends: bool = Field(
        default=True, description="Check streamed requests against recorded SENDs"
    )
    placeholder_target: str = Field(
        default="replay.invalid:443",
        description="Target of the channel that is never dialled during replay",
    )
    send_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds a replayed bidi stream waits for the recorded requests",
    )


class RPCReplayConfig(BaseModel):
    """Complete rpcreplay configuration"""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    recorder: RecorderConfig = Field(default_factory=RecorderConfig)
    replayer: ReplayerConfig = Field(default_factory=ReplayerConfig)


# ============================================================================
# Configuration Loader
# ============================================================================


def _env_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


class ConfigLoader:
    """Load configuration from multiple sources"""

    @staticmethod
    def load_from_env() -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config: Dict[str, Any] = {}

        log_level = os.getenv("RPCREPLAY_LOG_LEVEL")
        if log_level:
            config.setdefault("logging", {})["level"] = log_level

        log_dir = os.getenv("RPCREPLAY_LOG_DIR")
        if log_dir:
            config.setdefault("logging", {})["log_dir"] = log_dir
            config["logging"]["file_output"] = True

        flush = os.getenv("RPCREPLAY_FLUSH")
        if flush:
            config.setdefault("recorder", {})["flush_each_entry"] = _env_bool(flush)

        verify_sends = os.getenv("RPCREPLAY_VERIFY_SENDS")
        if verify_sends:
            config.setdefault("replayer", {})["verify_sends"] = _env_bool(verify_sends)

        target = os.getenv("RPCREPLAY_PLACEHOLDER_TARGET")
        if target:
            config.setdefault("replayer", {})["placeholder_target"] = target

        send_timeout = os.getenv("RPCREPLAY_SEND_TIMEOUT")
        if send_timeout:
            config.setdefault("replayer", {})["send_timeout"] = send_timeout

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config file {file_path}: {e}")
            return {}

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


# ============================================================================
# Global Configuration Instance
# ============================================================================

_config: Optional[RPCReplayConfig] = None


def get_config() -> RPCReplayConfig:
    """Get the cached global configuration, loading it on first use"""
    global _config

    if _config is None:
        _config = load_config()

    return _config


def load_config(
    config_file: Optional[Path] = None, env_override: bool = True
) -> RPCReplayConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config

    Returns:
        RPCReplayConfig instance
    """
    configs = []

    default_locations = [
        Path.home() / ".rpcreplay" / "config.yaml",
        Path.cwd() / ".rpcreplay.yaml",
    ]

    for location in default_locations:
        file_config = ConfigLoader.load_from_file(location)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {location}")

    if config_file:
        if not Path(config_file).exists():
            raise ConfigError(
                f"Config file not found: {config_file}",
                details={"path": str(config_file)},
            )
        file_config = ConfigLoader.load_from_file(Path(config_file))
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env()
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return RPCReplayConfig(**merged)
    except ValidationError as e:
        logger.error(f"Config validation failed: {e}")
        logger.warning("Using default configuration")
        return RPCReplayConfig()


def reload_config() -> RPCReplayConfig:
    """Reload global configuration"""
    global _config
    _config = load_config()
    logger.info("Configuration reloaded")
    return _config
