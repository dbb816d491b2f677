#!/usr/bin/env python3
"""
Configuration loading for GPU dependency management.

Configuration lives in a small YAML document. Every key is optional;
anything omitted falls back to the defaults below, and the API endpoint
and directory locations can also be overridden from the environment.

Example:
    api_base_url: https://go.gpu.tf
    download_timeout: 300
    auto_sync_interval_hours: 168
    security:
      require_checksums: true
    logging:
      level: DEBUG
      format: json
    paths:
      cache_dir: /var/cache/gpugo
    gpu_binaries:
      nvidia:
        linux:
          amd64: {url: "https://cdn.example.com/nvidia-smi-linux-amd64.zip", binary_name: nvidia-smi}
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from deps_models import DepsError
from platform_paths import Paths, default_paths


DEFAULT_API_BASE_URL = "https://go.gpu.tf"
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_DOWNLOAD_TIMEOUT = 300
DEFAULT_AUTO_SYNC_INTERVAL_HOURS = 7 * 24
DEFAULT_RELEASE_FETCH_SIZE = 500


class ConfigurationError(DepsError):
    """Configuration loading or validation failed."""
    pass


@dataclass
class DepsConfig:
    """Settings for the dependency manager and GPU binary fetcher."""
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    auto_sync_interval_hours: float = DEFAULT_AUTO_SYNC_INTERVAL_HOURS
    release_fetch_size: int = DEFAULT_RELEASE_FETCH_SIZE
    require_checksums: bool = False
    log_level: str = "INFO"
    log_format: str = "text"
    config_dir: Optional[str] = None
    cache_dir: Optional[str] = None
    lib_dir: Optional[str] = None
    gpu_binaries: Dict[str, Any] = field(default_factory=dict)

    def paths(self) -> Paths:
        """Resolve the directory layout, applying configured overrides."""
        return default_paths(
            config_dir=self.config_dir,
            cache_dir=self.cache_dir,
            lib_dir=self.lib_dir,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepsConfig":
        """
        Build a configuration from a parsed YAML mapping.

        Raises:
            ConfigurationError: If a section or value has the wrong type
        """
        security = _section(data, "security")
        log_config = _section(data, "logging")
        paths = _section(data, "paths")
        gpu_binaries = _section(data, "gpu_binaries")

        api_base_url = (
            data.get("api_base_url")
            or os.environ.get("GPU_GO_ENDPOINT")
            or DEFAULT_API_BASE_URL
        )

        require_checksums = security.get("require_checksums", False)
        if not isinstance(require_checksums, bool):
            raise ConfigurationError(
                f"security.require_checksums must be true or false, got {require_checksums!r}"
            )

        try:
            return cls(
                api_base_url=str(api_base_url).rstrip("/"),
                request_timeout=float(data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
                download_timeout=float(data.get("download_timeout", DEFAULT_DOWNLOAD_TIMEOUT)),
                auto_sync_interval_hours=float(
                    data.get("auto_sync_interval_hours", DEFAULT_AUTO_SYNC_INTERVAL_HOURS)
                ),
                release_fetch_size=int(data.get("release_fetch_size", DEFAULT_RELEASE_FETCH_SIZE)),
                require_checksums=require_checksums,
                log_level=str(log_config.get("level", "INFO")).upper(),
                log_format=str(log_config.get("format", "text")),
                config_dir=paths.get("config_dir"),
                cache_dir=paths.get("cache_dir"),
                lib_dir=paths.get("lib_dir"),
                gpu_binaries=gpu_binaries,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
    return value


def load_config(config_path: Optional[Union[str, Path]] = None) -> DepsConfig:
    """
    Load and validate the dependency manager configuration.

    Args:
        config_path: Path to a YAML configuration file. When omitted,
            GGO_DEPS_CONFIG is consulted and defaults are used if unset.

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if config_path is None:
        config_path = os.environ.get("GGO_DEPS_CONFIG")
        if not config_path:
            return DepsConfig.from_dict({})

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return DepsConfig.from_dict(data)


def setup_logging(config: DepsConfig, logger_name: str = "gpu-deps") -> logging.Logger:
    """
    Set up structured logging for the dependency manager loggers.

    Component loggers (deps-manager, local-state, gpu-binaries,
    releases-client) propagate to the root logger, so the handler is
    attached there once.

    Args:
        config: Loaded configuration
        logger_name: Name of the logger returned to the caller

    Returns:
        Configured logger
    """
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    if not root.handlers:
        handler = logging.StreamHandler()

        if config.log_format == "json":
            formatter = logging.Formatter(
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
                '"component": "%(name)s", "message": "%(message)s"}'
            )
        else:
            formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
            )

        handler.setFormatter(formatter)
        root.addHandler(handler)

    return logging.getLogger(logger_name)
