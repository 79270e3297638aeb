"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml


@dataclass
class ControllerConfig:
    """Reconcile loop configuration."""
    workers: int
    reconcile_timeout: float
    resync_period: float
    requeue_base_delay: float
    requeue_max_delay: float
    kubeconfig: Optional[str]


@dataclass
class HealthConfig:
    """Health probe server configuration."""
    host: str
    port: int


@dataclass
class RegistryConfig:
    """Image registry client configuration."""
    timeout: float


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_controller_config(self) -> ControllerConfig:
        """Get controller configuration."""
        ...

    def get_health_config(self) -> HealthConfig:
        """Get health probe configuration."""
        ...

    def get_registry_config(self) -> RegistryConfig:
        """Get registry configuration."""
        ...

    def get_log_level(self) -> str:
        """Get the logging level."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def _lookup(self, key: str, default: Any) -> Any:
        return os.getenv(key, default)

    def get_controller_config(self) -> ControllerConfig:
        """Get controller configuration from environment variables."""
        workers = int(self._lookup("WORKERS", 1))
        if workers < 1:
            raise ValueError(f"WORKERS must be at least 1, got {workers}")

        return ControllerConfig(
            workers=workers,
            reconcile_timeout=float(self._lookup("RECONCILE_TIMEOUT", 120)),
            resync_period=float(self._lookup("RESYNC_PERIOD", 600)),
            requeue_base_delay=float(self._lookup("REQUEUE_BASE_DELAY", 0.005)),
            requeue_max_delay=float(self._lookup("REQUEUE_MAX_DELAY", 1000)),
            kubeconfig=self._lookup("KUBECONFIG", None) or None,
        )

    def get_health_config(self) -> HealthConfig:
        """Get health probe configuration from environment variables."""
        return HealthConfig(
            host=self._lookup("HEALTH_HOST", "0.0.0.0"),
            port=int(self._lookup("HEALTH_PORT", 8081)),
        )

    def get_registry_config(self) -> RegistryConfig:
        """Get registry configuration from environment variables."""
        return RegistryConfig(
            timeout=float(self._lookup("REGISTRY_TIMEOUT", 10)),
        )

    def get_log_level(self) -> str:
        """Get the logging level from environment variables."""
        return str(self._lookup("LOG_LEVEL", "INFO")).upper()


# Environment variable -> key in the YAML configuration file
FILE_KEYS = {
    "WORKERS": "workers",
    "RECONCILE_TIMEOUT": "reconcileTimeout",
    "RESYNC_PERIOD": "resyncPeriod",
    "REQUEUE_BASE_DELAY": "requeueBaseDelay",
    "REQUEUE_MAX_DELAY": "requeueMaxDelay",
    "KUBECONFIG": "kubeconfig",
    "HEALTH_HOST": "healthHost",
    "HEALTH_PORT": "healthPort",
    "REGISTRY_TIMEOUT": "registryTimeout",
    "LOG_LEVEL": "logLevel",
}


class FileConfigProvider(EnvConfigProvider):
    """
    YAML file configuration provider.

    Values come from the file; environment variables take precedence so a
    deployment can override single settings without rewriting the file.
    """

    def __init__(self, config_path: str):
        """
        Load configuration file.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        self._values = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ValueError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {self.config_path} must contain a mapping")
        return data

    def _lookup(self, key: str, default: Any) -> Any:
        if key in os.environ:
            return os.environ[key]
        file_key = FILE_KEYS.get(key)
        if file_key is not None and self._values.get(file_key) is not None:
            return self._values[file_key]
        return default


def load_config_provider() -> ConfigProvider:
    """Pick the file provider when KMM_CONFIG_FILE is set, environment otherwise."""
    config_file = os.getenv("KMM_CONFIG_FILE")
    if config_file:
        return FileConfigProvider(config_file)
    return EnvConfigProvider()
