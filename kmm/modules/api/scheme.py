"""
Resource type registry.

Maps model classes to their API group, version, kind and plural so owner
references and API requests can be built without ambient global state. A
Scheme is created once at startup and injected wherever it is needed.
"""

from dataclasses import dataclass
from typing import Dict, Type, Union

from .models import (
    KMM_API_VERSION,
    KubeModel,
    Module,
    Node,
    NodeModulesConfig,
    OwnerReference,
    Secret,
)


class SchemeError(Exception):
    """Raised for types the scheme does not know."""


def _group_of(api_version: str) -> str:
    if "/" not in api_version:
        return ""
    return api_version.split("/", 1)[0]


@dataclass(frozen=True)
class ResourceInfo:
    api_version: str
    kind: str
    plural: str
    namespaced: bool

    @property
    def group(self) -> str:
        return _group_of(self.api_version)

    @property
    def version(self) -> str:
        return self.api_version.rsplit("/", 1)[-1]


class Scheme:
    """Registry of resource models."""

    def __init__(self):
        self._types: Dict[Type[KubeModel], ResourceInfo] = {}

    def register(
        self,
        model: Type[KubeModel],
        api_version: str,
        kind: str,
        plural: str,
        namespaced: bool,
    ) -> None:
        self._types[model] = ResourceInfo(
            api_version=api_version, kind=kind, plural=plural, namespaced=namespaced
        )

    def resource_for(self, model: Union[KubeModel, Type[KubeModel]]) -> ResourceInfo:
        """Look up the resource info of a model class or instance."""
        model_type = model if isinstance(model, type) else type(model)
        try:
            return self._types[model_type]
        except KeyError:
            raise SchemeError(f"{model_type.__name__} is not registered in the scheme") from None

    def set_owner_reference(self, owner: KubeModel, obj: KubeModel) -> None:
        """
        Add owner as a (non-controller) owner of obj.

        An existing reference to the same owner is replaced in place, so
        repeated calls leave a single entry.

        Raises:
            SchemeError: If the owner type is not registered
        """
        info = self.resource_for(owner)
        reference = OwnerReference(
            api_version=info.api_version,
            kind=info.kind,
            name=owner.metadata.name,
            uid=owner.metadata.uid or "",
        )

        references = obj.metadata.owner_references
        for i, existing in enumerate(references):
            if (
                _group_of(existing.api_version) == info.group
                and existing.kind == info.kind
                and existing.name == reference.name
            ):
                references[i] = reference
                return
        references.append(reference)


def default_scheme() -> Scheme:
    """Scheme with every resource the controller works with."""
    scheme = Scheme()
    scheme.register(Module, KMM_API_VERSION, "Module", "modules", namespaced=True)
    scheme.register(
        NodeModulesConfig, KMM_API_VERSION, "NodeModulesConfig", "nodemodulesconfigs",
        namespaced=False,
    )
    scheme.register(Node, "v1", "Node", "nodes", namespaced=False)
    scheme.register(Secret, "v1", "Secret", "secrets", namespaced=True)
    return scheme
