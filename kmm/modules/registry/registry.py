"""
Container image existence checks against OCI distribution registries.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from ..api.models import TLSOptions
from .auth import Credentials, RegistryAuthGetter

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "registry-1.docker.io"

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Image existence could not be determined."""


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    reference: str


def parse_image(image: str) -> ImageReference:
    """
    Split an image into registry host, repository and tag or digest.

    Images without a registry host resolve to Docker Hub; images without a
    tag or digest resolve to the latest tag.
    """
    name, reference = image, "latest"

    if "@" in name:
        name, reference = name.split("@", 1)
    if ":" in name.rsplit("/", 1)[-1]:
        name, tag = name.rsplit(":", 1)
        if "@" not in image:
            reference = tag

    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, rest
    else:
        registry, repository = "docker.io", name

    if registry in ("docker.io", "index.docker.io"):
        registry = DOCKER_HUB_REGISTRY
        if "/" not in repository:
            repository = f"library/{repository}"

    return ImageReference(registry=registry, repository=repository, reference=reference)


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a WWW-Authenticate header into its scheme and parameters."""
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(CHALLENGE_PARAM.findall(params))


class Registry:
    """Checks whether images exist in their registry."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize registry client.

        Args:
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.timeout = timeout
        self.transport = transport

    async def image_exists(
        self, image: str, tls: TLSOptions, auth_getter: RegistryAuthGetter
    ) -> bool:
        """
        Check whether an image manifest exists.

        Args:
            image: Image reference
            tls: Registry connection options
            auth_getter: Credential source for the registry

        Returns:
            True if the manifest exists, False if the registry reports it missing

        Raises:
            RegistryError: If the registry cannot answer
        """
        ref = parse_image(image)
        scheme = "http" if tls.insecure else "https"
        url = f"{scheme}://{ref.registry}/v2/{ref.repository}/manifests/{ref.reference}"
        credentials = await auth_getter.get_auth(ref.registry)
        headers = {"Accept": MANIFEST_ACCEPT}

        async with httpx.AsyncClient(
            verify=not tls.insecure_skip_tls_verify,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                response = await client.head(url, headers=headers)
                if response.status_code == 401:
                    authorization = await self._authorize(client, response, credentials, ref)
                    response = await client.head(url, headers={**headers, **authorization})
            except httpx.HTTPError as err:
                raise RegistryError(f"failed to check image {image}: {err}") from err

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            logger.debug(f"Image {image} not found in {ref.registry}")
            return False
        raise RegistryError(
            f"unexpected status {response.status_code} checking image {image}"
        )

    async def _authorize(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        credentials: Optional[Credentials],
        ref: ImageReference,
    ) -> Dict[str, str]:
        """Answer an authentication challenge and return the headers to retry with."""
        scheme, params = parse_challenge(response.headers.get("www-authenticate", ""))

        if scheme == "basic":
            if credentials is None:
                raise RegistryError(f"registry {ref.registry} requires credentials")
            username, password = credentials
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
            return {"Authorization": f"Basic {encoded}"}

        if scheme != "bearer" or "realm" not in params:
            raise RegistryError(f"unsupported authentication challenge from {ref.registry}")

        query = {"scope": params.get("scope", f"repository:{ref.repository}:pull")}
        if "service" in params:
            query["service"] = params["service"]

        token_response = await client.get(params["realm"], params=query, auth=credentials)
        if token_response.status_code != 200:
            raise RegistryError(
                f"token request to {params['realm']} failed with {token_response.status_code}"
            )

        try:
            body = token_response.json()
        except ValueError as err:
            raise RegistryError(f"invalid token response from {params['realm']}") from err
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError(f"no token in response from {params['realm']}")
        return {"Authorization": f"Bearer {token}"}
