"""
API Module - Black Box Interface

Purpose: Resource models shared by every other module
Interface: Module, Node, NodeModulesConfig, ModuleLoaderData, Scheme
Hidden: JSON aliasing, owner reference construction

Models carry no behaviour beyond serialization; logic lives in the modules
that use them.
"""

from .models import (
    KMM_API_VERSION,
    KernelMapping,
    LocalObjectReference,
    ModprobeArgs,
    ModprobeSpec,
    Module,
    ModuleConfig,
    ModuleLoaderContainerSpec,
    ModuleLoaderData,
    ModuleLoaderSpec,
    ModuleSpec,
    NamespacedName,
    Node,
    NodeModuleSpec,
    NodeModulesConfig,
    NodeModulesConfigSpec,
    NodeStatus,
    NodeSystemInfo,
    ObjectMeta,
    OwnerReference,
    Secret,
    TLSOptions,
)
from .scheme import ResourceInfo, Scheme, SchemeError, default_scheme

__all__ = [
    "KMM_API_VERSION",
    "KernelMapping",
    "LocalObjectReference",
    "ModprobeArgs",
    "ModprobeSpec",
    "Module",
    "ModuleConfig",
    "ModuleLoaderContainerSpec",
    "ModuleLoaderData",
    "ModuleLoaderSpec",
    "ModuleSpec",
    "NamespacedName",
    "Node",
    "NodeModuleSpec",
    "NodeModulesConfig",
    "NodeModulesConfigSpec",
    "NodeStatus",
    "NodeSystemInfo",
    "ObjectMeta",
    "OwnerReference",
    "Secret",
    "TLSOptions",
    "ResourceInfo",
    "Scheme",
    "SchemeError",
    "default_scheme",
]
