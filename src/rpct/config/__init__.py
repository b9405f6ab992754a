from __future__ import annotations

from rpct.config.models import (
    ClientConfig,
    Config,
    ConfigError,
    JobConfig,
    ServerConfig,
    config_from_mapping,
    load_config,
)

__all__ = [
    "ClientConfig",
    "Config",
    "ConfigError",
    "JobConfig",
    "ServerConfig",
    "config_from_mapping",
    "load_config",
]
