"""
Module/NMC convergence helper.

The only code that writes cluster state for the reconciler. Every operation
is idempotent and safe to re-run from scratch: it reads current state,
computes the minimal delta and writes it only when something changed. NMC
writes carry the last-read resourceVersion, so a concurrent update of the
same NMC (another module scheduled on the same node) fails with a conflict
and is retried on the next pass instead of being overwritten.
"""

import logging
from typing import Dict, List, Set

from ..api.models import (
    Module,
    ModuleConfig,
    ModuleLoaderData,
    NamespacedName,
    Node,
    NodeModulesConfig,
    ObjectMeta,
)
from ..api.scheme import Scheme
from ..client import Client, NotFoundError, merge_from
from ..kernel import KernelMapper
from ..nmc import NMCHelper, module_configured_label, module_in_use_label
from ..registry import Registry, RegistryAuthGetterFactory
from .scheduling import SchedulingResult, prepare_scheduling_data

logger = logging.getLogger(__name__)

MODULE_FINALIZER = "kmm.node.kubernetes.io/module-finalizer"


class ReconcileError(Exception):
    """A reconcile step failed; the pass will be retried."""


class AggregateError(ReconcileError):
    """Several independent operations failed."""

    def __init__(self, message: str, errors: List[Exception]):
        details = "; ".join(str(err) for err in errors)
        super().__init__(f"{message}: {details}")
        self.errors = errors


class ModuleNMCReconcilerHelper:
    """Reads and converges Module, Node and NMC state."""

    def __init__(
        self,
        client: Client,
        kernel_mapper: KernelMapper,
        registry: Registry,
        nmc_helper: NMCHelper,
        auth_factory: RegistryAuthGetterFactory,
        scheme: Scheme,
    ):
        """
        Initialize helper.

        Args:
            client: Object store client
            kernel_mapper: Kernel version resolver
            registry: Image existence checker
            nmc_helper: NMC entry mutator
            auth_factory: Registry credential factory
            scheme: Resource registry for owner references
        """
        self.client = client
        self.kernel_mapper = kernel_mapper
        self.registry = registry
        self.nmc_helper = nmc_helper
        self.auth_factory = auth_factory
        self.scheme = scheme

    async def get_requested_module(self, key: NamespacedName) -> Module:
        """
        Fetch the module being reconciled.

        Raises:
            NotFoundError: If the module is gone
        """
        return await self.client.get(Module, key)

    async def set_finalizer(self, mod: Module) -> None:
        """Add the module finalizer unless present."""
        if MODULE_FINALIZER in mod.metadata.finalizers:
            return

        modified = mod.model_copy(deep=True)
        modified.metadata.finalizers.append(MODULE_FINALIZER)
        await self.client.patch(modified, merge_from(mod, modified))
        logger.info(f"Added finalizer to module {mod.namespaced_name}")

    async def get_nodes_list_by_selector(self, mod: Module) -> List[Node]:
        return await self.client.list(Node, labels=mod.spec.selector)

    async def get_nmcs_by_module_set(self, mod: Module) -> Set[str]:
        """Names of the NMCs that currently configure the module."""
        label = module_configured_label(mod.metadata.namespace or "", mod.metadata.name)
        nmcs = await self.client.list(NodeModulesConfig, labels={label: ""})
        return {nmc.metadata.name for nmc in nmcs}

    def prepare_scheduling_data(
        self, mod: Module, targeted_nodes: List[Node], current_nmcs: Set[str]
    ) -> SchedulingResult:
        return prepare_scheduling_data(self.kernel_mapper, mod, targeted_nodes, current_nmcs)

    async def enable_module_on_node(self, mld: ModuleLoaderData, node: Node) -> None:
        """
        Write mld's configuration into the node's NMC.

        Does nothing while the image does not exist yet; the build is
        presumed to be running elsewhere and a later pass will pick it up.
        """
        auth_getter = self.auth_factory.new_registry_auth_getter_from(mld)
        exists = await self.registry.image_exists(mld.container_image, mld.registry_tls, auth_getter)
        if not exists:
            logger.info(
                f"Image {mld.container_image} for module {mld.namespace}/{mld.name} "
                f"does not exist yet, not scheduling on node {node.metadata.name}"
            )
            return

        module_config = ModuleConfig(
            kernel_version=mld.kernel_version,
            container_image=mld.container_image,
            in_tree_module_to_remove=mld.in_tree_module_to_remove,
            modprobe=mld.modprobe,
            insecure_pull=mld.registry_tls.insecure or mld.registry_tls.insecure_skip_tls_verify,
        )
        labels = {
            module_configured_label(mld.namespace, mld.name): "",
            module_in_use_label(mld.namespace, mld.name): "",
        }

        try:
            nmc = await self.client.get(NodeModulesConfig, NamespacedName(name=node.metadata.name))
        except NotFoundError:
            nmc = NodeModulesConfig(metadata=ObjectMeta(name=node.metadata.name))
            self.nmc_helper.set_module_config(nmc, mld, module_config)
            nmc.metadata.labels.update(labels)
            self.scheme.set_owner_reference(node, nmc)
            await self.client.create(nmc)
            logger.info(f"Created NMC {nmc.metadata.name} with module {mld.namespace}/{mld.name}")
            return

        modified = nmc.model_copy(deep=True)
        self.nmc_helper.set_module_config(modified, mld, module_config)
        modified.metadata.labels.update(labels)
        self.scheme.set_owner_reference(node, modified)

        patch = merge_from(nmc, modified, optimistic_lock=True)
        if not patch:
            logger.debug(f"NMC {nmc.metadata.name} already configures {mld.namespace}/{mld.name}")
            return
        await self.client.patch(modified, patch)
        logger.info(f"Configured module {mld.namespace}/{mld.name} in NMC {nmc.metadata.name}")

    async def disable_module_on_node(self, namespace: str, name: str, node_name: str) -> None:
        """Remove the module's entry from the node's NMC, if there is one."""
        nmc = await self.nmc_helper.get(node_name)
        if nmc is None:
            logger.debug(f"No NMC for node {node_name}, nothing to remove")
            return
        await self.remove_module_from_nmc(nmc, namespace, name)

    async def remove_module_from_nmc(
        self, nmc: NodeModulesConfig, namespace: str, name: str
    ) -> None:
        """
        Drop the module's entry and configured label from an NMC.

        The in-use label stays: only the node agent clears it, once the
        module is unloaded. The write happens whenever the entry list or
        the label changed.
        """
        modified = nmc.model_copy(deep=True)
        self.nmc_helper.remove_module_config(modified, namespace, name)
        modified.metadata.labels.pop(module_configured_label(namespace, name), None)

        patch = merge_from(nmc, modified, optimistic_lock=True)
        if not patch:
            return
        await self.client.patch(modified, patch)
        logger.info(f"Removed module {namespace}/{name} from NMC {nmc.metadata.name}")

    async def finalize_module(self, mod: Module) -> None:
        """
        Tear the module down before letting it be deleted.

        Configuration is removed from every NMC first; the finalizer is
        dropped only once no NMC reports the module in use.
        """
        namespace, name = mod.metadata.namespace or "", mod.metadata.name
        configured: Dict[str, str] = {module_configured_label(namespace, name): ""}
        in_use: Dict[str, str] = {module_in_use_label(namespace, name): ""}

        nmcs = await self.client.list(NodeModulesConfig, labels=configured)

        errors: List[Exception] = []
        for item in nmcs:
            nmc_name = item.metadata.name
            try:
                nmc = await self.client.get(NodeModulesConfig, NamespacedName(name=nmc_name))
                await self.remove_module_from_nmc(nmc, namespace, name)
            except NotFoundError:
                logger.debug(f"NMC {nmc_name} disappeared during finalization")
            except Exception as err:
                logger.error(f"Failed to remove module {mod.namespaced_name} from NMC {nmc_name}: {err}")
                errors.append(err)

        if errors:
            raise AggregateError(
                f"failed to remove module {mod.namespaced_name} from {len(errors)} NMC(s)", errors
            )

        loaded = await self.client.list(NodeModulesConfig, labels=in_use)
        if loaded:
            logger.info(
                f"Module {mod.namespaced_name} still in use on {len(loaded)} node(s), "
                "keeping finalizer"
            )
            return

        if MODULE_FINALIZER not in mod.metadata.finalizers:
            return

        modified = mod.model_copy(deep=True)
        modified.metadata.finalizers.remove(MODULE_FINALIZER)
        await self.client.patch(modified, merge_from(mod, modified))
        logger.info(f"Removed finalizer from module {mod.namespaced_name}")
