"""
Module -> NMC reconcile pass.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..api.models import NamespacedName
from ..client import NotFoundError
from .helper import AggregateError, ModuleNMCReconcilerHelper, ReconcileError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


class ModuleNMCReconciler:
    """
    Drives one module towards its desired per-node configuration.

    A pass either completes or raises; the caller retries failed passes.
    Nothing is remembered between passes.
    """

    def __init__(self, helper: ModuleNMCReconcilerHelper):
        self.helper = helper

    async def reconcile(self, key: NamespacedName) -> ReconcileResult:
        """
        Run one reconcile pass for a module.

        Args:
            key: Module namespace and name

        Returns:
            ReconcileResult

        Raises:
            ReconcileError: If any step failed
        """
        logger.info(f"Reconciling module {key}")

        try:
            mod = await self.helper.get_requested_module(key)
        except NotFoundError:
            logger.info(f"Module {key} not found, nothing to do")
            return ReconcileResult()
        except Exception as err:
            raise ReconcileError(f"failed to get module {key}: {err}") from err

        if mod.is_being_deleted:
            logger.info(f"Module {key} is being deleted, finalizing")
            try:
                await self.helper.finalize_module(mod)
            except ReconcileError:
                raise
            except Exception as err:
                raise ReconcileError(f"failed to finalize module {key}: {err}") from err
            return ReconcileResult()

        try:
            await self.helper.set_finalizer(mod)
        except Exception as err:
            raise ReconcileError(f"failed to set finalizer on module {key}: {err}") from err

        try:
            nodes = await self.helper.get_nodes_list_by_selector(mod)
        except Exception as err:
            raise ReconcileError(f"failed to list nodes for module {key}: {err}") from err

        try:
            current_nmcs = await self.helper.get_nmcs_by_module_set(mod)
        except Exception as err:
            raise ReconcileError(f"failed to list NMCs for module {key}: {err}") from err

        scheduling = self.helper.prepare_scheduling_data(mod, nodes, current_nmcs)
        if not scheduling.ok:
            raise AggregateError(f"failed to prepare scheduling data for module {key}", scheduling.errors)

        first_error: Optional[Exception] = None
        for node_name in sorted(scheduling.data):
            sd = scheduling.data[node_name]
            try:
                if sd.mld is not None:
                    await self.helper.enable_module_on_node(sd.mld, sd.node)
                elif sd.nmc_exists:
                    await self.helper.disable_module_on_node(
                        mod.metadata.namespace or "", mod.metadata.name, node_name
                    )
            except Exception as err:
                logger.error(f"Failed to converge module {key} on node {node_name}: {err}")
                if first_error is None:
                    first_error = ReconcileError(
                        f"failed to converge module {key} on node {node_name}: {err}"
                    )
                    first_error.__cause__ = err

        if first_error is not None:
            raise first_error

        logger.info(f"Reconciled module {key} on {len(scheduling.data)} node(s)")
        return ReconcileResult()
