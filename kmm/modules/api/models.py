"""
KMM shared data models.

These models define the structure of the cluster resources the controller
reads and writes. Field names follow the Kubernetes JSON representation
through camelCase aliases so objects round-trip to and from the API server.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

KMM_API_VERSION = "kmm.sigs.x-k8s.io/v1beta1"


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a resource. Cluster-scoped resources have an empty namespace."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


class KubeModel(BaseModel):
    """
    Base model for Kubernetes JSON documents.

    Fields the models do not declare are kept and serialized back, so a
    write never drops data another writer put on the object.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the API server representation."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# Metadata


class OwnerReference(KubeModel):
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    creation_timestamp: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list)


class LocalObjectReference(KubeModel):
    name: str


# Module


class TLSOptions(KubeModel):
    """Registry connection options for an image."""

    insecure: bool = False
    insecure_skip_tls_verify: bool = Field(default=False, alias="insecureSkipTLSVerify")


class ModprobeArgs(KubeModel):
    load: List[str] = Field(default_factory=list)
    unload: List[str] = Field(default_factory=list)


class ModprobeSpec(KubeModel):
    """How the node agent invokes modprobe for the kernel module."""

    module_name: str = ""
    parameters: List[str] = Field(default_factory=list)
    dir_name: Optional[str] = None
    firmware_path: Optional[str] = None
    args: Optional[ModprobeArgs] = None
    raw_args: Optional[ModprobeArgs] = None
    modules_loading_order: List[str] = Field(default_factory=list)


class KernelMapping(KubeModel):
    """Container image selection for kernels matching literal or regexp."""

    literal: Optional[str] = None
    regexp: Optional[str] = None
    container_image: Optional[str] = None
    in_tree_module_to_remove: Optional[str] = None
    registry_tls: Optional[TLSOptions] = Field(default=None, alias="registryTLS")


class ModuleLoaderContainerSpec(KubeModel):
    modprobe: ModprobeSpec = Field(default_factory=ModprobeSpec)
    container_image: Optional[str] = None
    in_tree_module_to_remove: Optional[str] = None
    image_pull_policy: Optional[str] = None
    registry_tls: TLSOptions = Field(default_factory=TLSOptions, alias="registryTLS")
    kernel_mappings: List[KernelMapping] = Field(default_factory=list)


class ModuleLoaderSpec(KubeModel):
    container: ModuleLoaderContainerSpec = Field(default_factory=ModuleLoaderContainerSpec)
    service_account_name: Optional[str] = None


class ModuleSpec(KubeModel):
    selector: Dict[str, str] = Field(default_factory=dict)
    image_repo_secret: Optional[LocalObjectReference] = None
    module_loader: ModuleLoaderSpec = Field(default_factory=ModuleLoaderSpec)


class Module(KubeModel):
    """Desired kernel module deployment."""

    api_version: str = KMM_API_VERSION
    kind: str = "Module"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ModuleSpec = Field(default_factory=ModuleSpec)
    status: Optional[Dict[str, Any]] = None

    @property
    def namespaced_name(self) -> NamespacedName:
        return NamespacedName(name=self.metadata.name, namespace=self.metadata.namespace or "")

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None


# Node


class NodeSystemInfo(KubeModel):
    kernel_version: str = ""
    os_image: Optional[str] = None
    architecture: Optional[str] = None


class NodeStatus(KubeModel):
    node_info: NodeSystemInfo = Field(default_factory=NodeSystemInfo)


class Node(KubeModel):
    """A cluster machine. Read-only to the controller."""

    api_version: str = "v1"
    kind: str = "Node"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    status: NodeStatus = Field(default_factory=NodeStatus)

    @property
    def kernel_version(self) -> str:
        return self.status.node_info.kernel_version


# Secret


class Secret(KubeModel):
    api_version: str = "v1"
    kind: str = "Secret"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    type: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)


# NodeModulesConfig


class ModuleConfig(KubeModel):
    """Resolved configuration of one module on one node."""

    kernel_version: str
    container_image: str
    in_tree_module_to_remove: Optional[str] = None
    modprobe: ModprobeSpec = Field(default_factory=ModprobeSpec)
    insecure_pull: bool = False


class NodeModuleSpec(KubeModel):
    name: str
    namespace: str
    config: ModuleConfig
    image_repo_secret: Optional[LocalObjectReference] = None
    service_account_name: Optional[str] = None


class NodeModulesConfigSpec(KubeModel):
    modules: List[NodeModuleSpec] = Field(default_factory=list)


class NodeModulesConfig(KubeModel):
    """Per-node aggregate of desired module configurations. Named after its node."""

    api_version: str = KMM_API_VERSION
    kind: str = "NodeModulesConfig"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: NodeModulesConfigSpec = Field(default_factory=NodeModulesConfigSpec)
    status: Optional[Dict[str, Any]] = None


# Resolved data


@dataclass(frozen=True)
class ModuleLoaderData:
    """Module configuration resolved for one kernel version. Never persisted."""

    name: str
    namespace: str
    kernel_version: str
    container_image: str
    in_tree_module_to_remove: Optional[str] = None
    modprobe: ModprobeSpec = field(default_factory=ModprobeSpec)
    registry_tls: TLSOptions = field(default_factory=TLSOptions)
    image_repo_secret: Optional[LocalObjectReference] = None
    service_account_name: Optional[str] = None
    owner: Optional[Module] = field(default=None, compare=False, repr=False)
