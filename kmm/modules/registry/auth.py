"""
Registry credential resolution.

Credentials come from the Module's image pull secret, a
kubernetes.io/dockerconfigjson Secret in the Module's namespace.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple

from ..api.models import ModuleLoaderData, NamespacedName, Secret
from ..client import Client, NotFoundError

logger = logging.getLogger(__name__)

DOCKER_HUB_ALIASES = {
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
    "registry.hub.docker.com",
}

Credentials = Tuple[str, str]


class RegistryAuthError(Exception):
    """Pull secret is missing or unreadable."""


class RegistryAuthGetter(Protocol):
    """Protocol for credential sources."""

    async def get_auth(self, registry: str) -> Optional[Credentials]:
        """
        Get credentials for a registry host.

        Returns:
            (username, password) or None for anonymous access
        """
        ...


def normalize_registry(host: str) -> str:
    """Reduce a docker config key or image host to a comparable hostname."""
    host = host.strip()
    for scheme in ("https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
    host = host.split("/", 1)[0].lower()
    if host in DOCKER_HUB_ALIASES:
        return "docker.io"
    return host


def decode_docker_config(secret: Secret) -> Dict[str, Any]:
    """
    Extract the auths section of a pull secret.

    Raises:
        RegistryAuthError: If the secret holds no usable docker config
    """
    name = f"{secret.metadata.namespace}/{secret.metadata.name}"
    raw = secret.data.get(".dockerconfigjson") or secret.data.get(".dockercfg")
    if raw is None:
        raise RegistryAuthError(f"secret {name} has no docker configuration")

    try:
        config = json.loads(base64.b64decode(raw))
    except (binascii.Error, ValueError) as err:
        raise RegistryAuthError(f"secret {name} holds an invalid docker configuration") from err

    if not isinstance(config, dict):
        raise RegistryAuthError(f"secret {name} holds an invalid docker configuration")

    # .dockercfg is the legacy format without the "auths" wrapper
    return config.get("auths", config)


def credentials_from_entry(entry: Dict[str, Any]) -> Optional[Credentials]:
    if entry.get("username") and entry.get("password") is not None:
        return entry["username"], entry["password"]

    encoded = entry.get("auth")
    if not encoded:
        return None
    try:
        username, _, password = base64.b64decode(encoded).decode().partition(":")
    except (binascii.Error, UnicodeDecodeError) as err:
        raise RegistryAuthError("invalid auth entry in docker configuration") from err
    return username, password


class AnonymousAuthGetter:
    """No credentials."""

    async def get_auth(self, registry: str) -> Optional[Credentials]:
        return None


class SecretAuthGetter:
    """Credentials read from a pull secret on every call."""

    def __init__(self, client: Client, secret: NamespacedName):
        self.client = client
        self.secret = secret

    async def get_auth(self, registry: str) -> Optional[Credentials]:
        try:
            secret = await self.client.get(Secret, self.secret)
        except NotFoundError as err:
            raise RegistryAuthError(f"pull secret {self.secret} not found") from err

        wanted = normalize_registry(registry)
        for key, entry in decode_docker_config(secret).items():
            if normalize_registry(key) == wanted and isinstance(entry, dict):
                return credentials_from_entry(entry)

        logger.debug(f"Pull secret {self.secret} has no entry for {registry}")
        return None


class RegistryAuthGetterFactory:
    """Builds the credential source for a resolved module."""

    def __init__(self, client: Client):
        self.client = client

    def new_registry_auth_getter_from(self, mld: ModuleLoaderData) -> RegistryAuthGetter:
        if mld.image_repo_secret is None:
            return AnonymousAuthGetter()
        return SecretAuthGetter(
            self.client,
            NamespacedName(name=mld.image_repo_secret.name, namespace=mld.namespace),
        )
