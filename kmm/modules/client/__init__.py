"""
Client Module - Black Box Interface

Purpose: Abstract all cluster object store access
Interface: get(), list(), create(), patch(), watch(), merge_from()
Hidden: kubernetes_asyncio specifics, API routing, error translation

Can be replaced with any object store (a fake in tests) without affecting
other modules.
"""

from .client import (
    Client,
    ClientError,
    ConflictError,
    KubernetesClient,
    NotFoundError,
    label_selector,
)
from .patch import json_merge_diff, merge_from

__all__ = [
    "Client",
    "ClientError",
    "ConflictError",
    "KubernetesClient",
    "NotFoundError",
    "label_selector",
    "json_merge_diff",
    "merge_from",
]
