"""
Per-node scheduling decisions.

Resolution never short-circuits: a node whose kernel cannot be resolved is
reported in the error list while every other node still gets its decision.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..api.models import Module, ModuleLoaderData, Node
from ..kernel import KernelMapper, NoMatchingKernelMappingError

logger = logging.getLogger(__name__)


@dataclass
class SchedulingData:
    """
    Decision for one (module, node) pair.

    mld set -> enable; otherwise nmc_exists -> disable; otherwise nothing.
    """

    mld: Optional[ModuleLoaderData] = None
    node: Optional[Node] = None
    nmc_exists: bool = False


@dataclass
class SchedulingResult:
    """Decisions keyed by node name plus per-node resolution failures."""

    data: Dict[str, SchedulingData] = field(default_factory=dict)
    errors: List[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def prepare_scheduling_data(
    kernel_mapper: KernelMapper,
    module: Module,
    targeted_nodes: List[Node],
    current_nmcs: Set[str],
) -> SchedulingResult:
    """
    Resolve what should happen on every node seen by either side.

    Args:
        kernel_mapper: Kernel version resolver
        module: Module being reconciled
        targeted_nodes: Nodes matching the module's selector
        current_nmcs: Names of nodes whose NMC currently configures the module

    Returns:
        SchedulingResult with one entry per resolvable node
    """
    result = SchedulingResult()

    for node in targeted_nodes:
        node_name = node.metadata.name
        nmc_exists = node_name in current_nmcs
        try:
            mld = kernel_mapper.get_module_loader_data_for_kernel(module, node.kernel_version)
        except NoMatchingKernelMappingError:
            logger.debug(f"No kernel mapping for node {node_name} ({node.kernel_version})")
            result.data[node_name] = SchedulingData(mld=None, node=node, nmc_exists=nmc_exists)
            continue
        except Exception as err:
            result.errors.append(err)
            logger.error(f"Failed to resolve module {module.namespaced_name} for node {node_name}: {err}")
            continue

        result.data[node_name] = SchedulingData(mld=mld, node=node, nmc_exists=nmc_exists)

    targeted_names = {node.metadata.name for node in targeted_nodes}
    for node_name in current_nmcs - targeted_names:
        result.data[node_name] = SchedulingData(mld=None, node=None, nmc_exists=True)

    return result
