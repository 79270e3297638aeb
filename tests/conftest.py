"""
Shared pytest fixtures for KMM operator tests.

This module provides common fixtures including:
- FakeClient: in-memory object store honouring merge patches and
  resourceVersion preconditions
- Builders for Module, Node and NodeModulesConfig objects
- A helper wired with the fake client and a mocked registry
"""

import asyncio
import copy
import os
import sys
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kmm.modules.api import (
    KernelMapping,
    LocalObjectReference,
    Module,
    ModuleLoaderContainerSpec,
    ModuleLoaderSpec,
    ModuleSpec,
    NamespacedName,
    Node,
    NodeModulesConfig,
    NodeStatus,
    NodeSystemInfo,
    ObjectMeta,
    default_scheme,
)
from kmm.modules.client import ClientError, ConflictError, NotFoundError
from kmm.modules.kernel import KernelMapper
from kmm.modules.nmc import NMCHelper
from kmm.modules.reconciler import ModuleNMCReconciler, ModuleNMCReconcilerHelper
from kmm.modules.registry import RegistryAuthGetterFactory


# =============================================================================
# In-memory object store
# =============================================================================

def apply_merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply an RFC 7386 merge patch to a JSON document."""
    result = copy.deepcopy(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = apply_merge_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class FakeClient:
    """
    Object store double implementing the Client protocol.

    Every call is recorded in `calls` as (operation, kind, name, payload).
    Failures are injected per operation and object name with `fail()`.
    """

    def __init__(self, scheme=None):
        self.scheme = scheme or default_scheme()
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.watch_events: Dict[str, List[Tuple[str, Any]]] = {}
        self.closed = False
        self._version = 0

    def _key(self, kind: str, namespace: Optional[str], name: str) -> Tuple[str, str, str]:
        return kind, namespace or "", name

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _check_failure(self, operation: str, name: str) -> None:
        err = self.failures.get((operation, name)) or self.failures.get((operation, "*"))
        if err is not None:
            raise err

    def fail(self, operation: str, name: str, err: Exception) -> None:
        self.failures[(operation, name)] = err

    def add(self, obj) -> None:
        """Seed an object without recording a call."""
        kind = self.scheme.resource_for(obj).kind
        raw = obj.to_dict()
        raw["metadata"]["resourceVersion"] = self._next_version()
        self.objects[self._key(kind, obj.metadata.namespace, obj.metadata.name)] = raw

    def stored(self, model, name: str, namespace: str = ""):
        """Current stored object, or None."""
        kind = self.scheme.resource_for(model).kind
        raw = self.objects.get(self._key(kind, namespace, name))
        if raw is None:
            return None
        return model.model_validate(copy.deepcopy(raw))

    def writes(self) -> List[Tuple[str, str, str, Any]]:
        return [call for call in self.calls if call[0] in ("create", "patch")]

    async def get(self, model, key: NamespacedName):
        kind = self.scheme.resource_for(model).kind
        self.calls.append(("get", kind, key.name, None))
        self._check_failure("get", key.name)
        raw = self.objects.get(self._key(kind, key.namespace, key.name))
        if raw is None:
            raise NotFoundError(f"{kind} {key} not found", status=404)
        return model.model_validate(copy.deepcopy(raw))

    async def list(self, model, labels=None):
        kind = self.scheme.resource_for(model).kind
        self.calls.append(("list", kind, "", dict(labels or {})))
        self._check_failure("list", kind)
        items = []
        for (stored_kind, _, _), raw in sorted(self.objects.items()):
            if stored_kind != kind:
                continue
            obj_labels = raw["metadata"].get("labels", {})
            if all(obj_labels.get(k) == v for k, v in (labels or {}).items()):
                items.append(model.model_validate(copy.deepcopy(raw)))
        return items

    async def create(self, obj) -> None:
        kind = self.scheme.resource_for(obj).kind
        self.calls.append(("create", kind, obj.metadata.name, obj.to_dict()))
        self._check_failure("create", obj.metadata.name)
        key = self._key(kind, obj.metadata.namespace, obj.metadata.name)
        if key in self.objects:
            raise ConflictError(f"{kind} {obj.metadata.name} already exists", status=409)
        raw = obj.to_dict()
        raw["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = raw

    async def patch(self, obj, patch: Dict[str, Any]) -> None:
        kind = self.scheme.resource_for(obj).kind
        self.calls.append(("patch", kind, obj.metadata.name, copy.deepcopy(patch)))
        self._check_failure("patch", obj.metadata.name)
        key = self._key(kind, obj.metadata.namespace, obj.metadata.name)
        raw = self.objects.get(key)
        if raw is None:
            raise NotFoundError(f"{kind} {obj.metadata.name} not found", status=404)

        expected = patch.get("metadata", {}).get("resourceVersion")
        if expected is not None and expected != raw["metadata"].get("resourceVersion"):
            raise ConflictError(f"{kind} {obj.metadata.name} was modified", status=409)

        updated = apply_merge_patch(raw, patch)
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = updated

    async def watch(self, model):
        kind = self.scheme.resource_for(model).kind
        for event in self.watch_events.get(kind, []):
            yield event
        # Stay open like a real watch until cancelled
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Object builders
# =============================================================================

@pytest.fixture
def make_module():
    """Build a Module with one kernel mapping."""

    def _make(
        name: str = "mod",
        namespace: str = "ns",
        selector: Optional[Dict[str, str]] = None,
        mappings: Optional[List[KernelMapping]] = None,
        image_repo_secret: Optional[str] = None,
        finalizers: Optional[List[str]] = None,
        deleting: bool = False,
    ) -> Module:
        if mappings is None:
            mappings = [KernelMapping(regexp=r"^.+$", container_image="img:${KERNEL_FULL_VERSION}")]
        return Module(
            metadata=ObjectMeta(
                name=name,
                namespace=namespace,
                uid=f"{name}-uid",
                finalizers=list(finalizers or []),
                deletion_timestamp="2024-01-01T00:00:00Z" if deleting else None,
            ),
            spec=ModuleSpec(
                selector={"role": "worker"} if selector is None else selector,
                image_repo_secret=(
                    LocalObjectReference(name=image_repo_secret) if image_repo_secret else None
                ),
                module_loader=ModuleLoaderSpec(
                    container=ModuleLoaderContainerSpec(kernel_mappings=mappings),
                ),
            ),
        )

    return _make


@pytest.fixture
def make_node():
    """Build a Node running a kernel."""

    def _make(name: str, kernel: str = "5.14", labels: Optional[Dict[str, str]] = None) -> Node:
        return Node(
            metadata=ObjectMeta(
                name=name,
                uid=f"{name}-uid",
                labels={"role": "worker"} if labels is None else labels,
            ),
            status=NodeStatus(node_info=NodeSystemInfo(kernel_version=kernel)),
        )

    return _make


@pytest.fixture
def make_nmc():
    """Build a NodeModulesConfig with the given labels."""

    def _make(name: str, labels: Optional[Dict[str, str]] = None) -> NodeModulesConfig:
        return NodeModulesConfig(metadata=ObjectMeta(name=name, labels=dict(labels or {})))

    return _make


# =============================================================================
# Wired components
# =============================================================================

@pytest.fixture
def scheme():
    return default_scheme()


@pytest.fixture
def fake_client(scheme):
    return FakeClient(scheme)


@pytest.fixture
def registry_mock():
    """Registry whose images all exist."""
    registry = AsyncMock()
    registry.image_exists = AsyncMock(return_value=True)
    return registry


@pytest.fixture
def helper(fake_client, registry_mock, scheme):
    return ModuleNMCReconcilerHelper(
        client=fake_client,
        kernel_mapper=KernelMapper(),
        registry=registry_mock,
        nmc_helper=NMCHelper(fake_client),
        auth_factory=RegistryAuthGetterFactory(fake_client),
        scheme=scheme,
    )


@pytest.fixture
def reconciler(helper):
    return ModuleNMCReconciler(helper)


@pytest.fixture
def failing(fake_client):
    """Shortcut to inject a transient store error."""

    def _fail(operation: str, name: str = "*") -> ClientError:
        err = ClientError(f"{operation} {name}: some error", status=500)
        fake_client.fail(operation, name, err)
        return err

    return _fail
