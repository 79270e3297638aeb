"""
Registry Module - Black Box Interface

Purpose: Check whether module images exist and resolve pull credentials
Interface: Registry.image_exists(), RegistryAuthGetterFactory
Hidden: Distribution API calls, token negotiation, docker config parsing

A missing image is a normal answer (False), not an error: builds may still
be in flight elsewhere.
"""

from .auth import (
    AnonymousAuthGetter,
    RegistryAuthError,
    RegistryAuthGetter,
    RegistryAuthGetterFactory,
    SecretAuthGetter,
)
from .registry import ImageReference, Registry, RegistryError, parse_image

__all__ = [
    "AnonymousAuthGetter",
    "RegistryAuthError",
    "RegistryAuthGetter",
    "RegistryAuthGetterFactory",
    "SecretAuthGetter",
    "ImageReference",
    "Registry",
    "RegistryError",
    "parse_image",
]
