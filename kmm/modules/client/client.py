"""
Cluster object store access.

The rest of the controller only sees the Client protocol: get, list,
create, patch and watch over the resource models. KubernetesClient is the
production implementation on top of kubernetes_asyncio.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Type, TypeVar

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio import watch as k8s_watch
from kubernetes_asyncio.client.api_client import ApiClient
from kubernetes_asyncio.client.rest import ApiException

from ..api.models import KubeModel, NamespacedName
from ..api.scheme import ResourceInfo, Scheme

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=KubeModel)

MERGE_PATCH = "application/merge-patch+json"

# Core resources are served by typed endpoints: kind -> (read, list across namespaces)
CORE_CALLS = {
    "Node": ("read_node", "list_node"),
    "Secret": ("read_namespaced_secret", "list_secret_for_all_namespaces"),
}


class ClientError(Exception):
    """Failure talking to the object store."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ClientError):
    """Requested object does not exist."""


class ConflictError(ClientError):
    """Write rejected because the object changed since it was read."""


class Client(Protocol):
    """Protocol for object store clients."""

    async def get(self, model: Type[T], key: NamespacedName) -> T:
        """
        Fetch one object.

        Raises:
            NotFoundError: If the object does not exist
        """
        ...

    async def list(self, model: Type[T], labels: Optional[Dict[str, str]] = None) -> List[T]:
        """List objects, optionally restricted to those carrying all labels."""
        ...

    async def create(self, obj: KubeModel) -> None:
        """Create an object."""
        ...

    async def patch(self, obj: KubeModel, patch: Dict[str, Any]) -> None:
        """Apply a JSON merge patch to an object."""
        ...

    def watch(self, model: Type[T]) -> AsyncIterator[Tuple[str, T]]:
        """Stream (event type, object) pairs for a resource."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


def label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    """Render an equality label selector (k=v,k2=v2)."""
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def translate_api_exception(err: ApiException, what: str) -> ClientError:
    """Map an API server error onto the client error taxonomy."""
    message = f"{what}: {err.status} {err.reason}"
    if err.status == 404:
        return NotFoundError(message, status=err.status)
    if err.status == 409:
        return ConflictError(message, status=err.status)
    return ClientError(message, status=err.status)


class KubernetesClient:
    """Object store client backed by the Kubernetes API server."""

    def __init__(self, api_client: ApiClient, scheme: Scheme):
        """
        Initialize client.

        Args:
            api_client: Configured kubernetes_asyncio API client
            scheme: Resource registry used to route requests
        """
        self.api_client = api_client
        self.scheme = scheme
        self.core_v1 = k8s_client.CoreV1Api(api_client)
        self.custom_objects = k8s_client.CustomObjectsApi(api_client)

    @classmethod
    async def from_environment(
        cls, scheme: Scheme, kubeconfig: Optional[str] = None
    ) -> "KubernetesClient":
        """Build a client from in-cluster credentials, falling back to kubeconfig."""
        try:
            k8s_config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except k8s_config.ConfigException:
            await k8s_config.load_kube_config(config_file=kubeconfig)
            logger.info(f"Using kubeconfig {kubeconfig or '(default)'}")
        return cls(ApiClient(), scheme)

    def _to_model(self, model: Type[T], raw: Any) -> T:
        if not isinstance(raw, dict):
            raw = self.api_client.sanitize_for_serialization(raw)
        return model.model_validate(raw)

    def _is_core(self, info: ResourceInfo) -> bool:
        return info.group == ""

    def _core_calls(self, info: ResourceInfo) -> Tuple[str, str]:
        try:
            return CORE_CALLS[info.kind]
        except KeyError:
            raise ClientError(f"core resource {info.kind} is not supported") from None

    async def get(self, model: Type[T], key: NamespacedName) -> T:
        info = self.scheme.resource_for(model)
        try:
            if self._is_core(info):
                read, _ = self._core_calls(info)
                args = (key.name, key.namespace) if info.namespaced else (key.name,)
                raw = await getattr(self.core_v1, read)(*args)
            elif info.namespaced:
                raw = await self.custom_objects.get_namespaced_custom_object(
                    info.group, info.version, key.namespace, info.plural, key.name
                )
            else:
                raw = await self.custom_objects.get_cluster_custom_object(
                    info.group, info.version, info.plural, key.name
                )
        except ApiException as err:
            raise translate_api_exception(err, f"get {info.kind} {key}") from err
        return self._to_model(model, raw)

    async def list(self, model: Type[T], labels: Optional[Dict[str, str]] = None) -> List[T]:
        info = self.scheme.resource_for(model)
        selector = label_selector(labels)
        kwargs = {"label_selector": selector} if selector else {}
        try:
            if self._is_core(info):
                _, list_call = self._core_calls(info)
                result = await getattr(self.core_v1, list_call)(**kwargs)
                items = result.items
            else:
                result = await self.custom_objects.list_cluster_custom_object(
                    info.group, info.version, info.plural, **kwargs
                )
                items = result.get("items", [])
        except ApiException as err:
            raise translate_api_exception(err, f"list {info.kind} ({selector})") from err
        return [self._to_model(model, item) for item in items]

    async def create(self, obj: KubeModel) -> None:
        info = self.scheme.resource_for(obj)
        if self._is_core(info):
            raise ClientError(f"creating core resource {info.kind} is not supported")
        body = obj.to_dict()
        try:
            if info.namespaced:
                await self.custom_objects.create_namespaced_custom_object(
                    info.group, info.version, obj.metadata.namespace, info.plural, body
                )
            else:
                await self.custom_objects.create_cluster_custom_object(
                    info.group, info.version, info.plural, body
                )
        except ApiException as err:
            raise translate_api_exception(err, f"create {info.kind} {obj.metadata.name}") from err

    async def patch(self, obj: KubeModel, patch: Dict[str, Any]) -> None:
        info = self.scheme.resource_for(obj)
        if self._is_core(info):
            raise ClientError(f"patching core resource {info.kind} is not supported")
        try:
            if info.namespaced:
                await self.custom_objects.patch_namespaced_custom_object(
                    info.group, info.version, obj.metadata.namespace, info.plural,
                    obj.metadata.name, patch, _content_type=MERGE_PATCH,
                )
            else:
                await self.custom_objects.patch_cluster_custom_object(
                    info.group, info.version, info.plural, obj.metadata.name, patch,
                    _content_type=MERGE_PATCH,
                )
        except ApiException as err:
            raise translate_api_exception(err, f"patch {info.kind} {obj.metadata.name}") from err

    async def watch(self, model: Type[T]) -> AsyncIterator[Tuple[str, T]]:
        info = self.scheme.resource_for(model)
        if self._is_core(info):
            _, list_call = self._core_calls(info)
            func, args = getattr(self.core_v1, list_call), ()
        else:
            func = self.custom_objects.list_cluster_custom_object
            args = (info.group, info.version, info.plural)

        stream = k8s_watch.Watch()
        try:
            async for event in stream.stream(func, *args):
                if event["type"] == "ERROR":
                    raise ClientError(f"watch {info.kind} failed: {event.get('raw_object')}")
                yield event["type"], self._to_model(model, event["object"])
        except ApiException as err:
            raise translate_api_exception(err, f"watch {info.kind}") from err
        finally:
            stream.stop()

    async def close(self) -> None:
        await self.api_client.close()
