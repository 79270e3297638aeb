"""
Config Module - Black Box Interface

Purpose: Controller configuration management
Interface: load_config_provider(), ConfigProvider
Hidden: Config sources (environment, YAML file), parsing

Can be replaced with different config systems without affecting other modules.
"""

from .provider import (
    ConfigProvider,
    ControllerConfig,
    EnvConfigProvider,
    FileConfigProvider,
    HealthConfig,
    RegistryConfig,
    load_config_provider,
)

__all__ = [
    "ConfigProvider",
    "ControllerConfig",
    "EnvConfigProvider",
    "FileConfigProvider",
    "HealthConfig",
    "RegistryConfig",
    "load_config_provider",
]
