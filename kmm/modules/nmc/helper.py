"""
NodeModulesConfig entry mutation.

The helper edits the in-memory spec of an NMC. It never writes to the
cluster; callers persist the result with a patch or create.
"""

import logging
from typing import Optional, Tuple

from ..api.models import (
    ModuleConfig,
    ModuleLoaderData,
    NamespacedName,
    NodeModuleSpec,
    NodeModulesConfig,
)
from ..client import Client, NotFoundError

logger = logging.getLogger(__name__)


class NMCHelperError(Exception):
    """Raised when an NMC cannot be edited safely."""


class NMCHelper:
    """Reads NMCs and edits their per-module entries."""

    def __init__(self, client: Client):
        """
        Initialize NMC helper.

        Args:
            client: Object store client
        """
        self.client = client

    async def get(self, name: str) -> Optional[NodeModulesConfig]:
        """Fetch the NMC of a node, None if it does not exist."""
        try:
            return await self.client.get(NodeModulesConfig, NamespacedName(name=name))
        except NotFoundError:
            return None

    def get_module_spec_entry(
        self, nmc: NodeModulesConfig, namespace: str, name: str
    ) -> Optional[Tuple[NodeModuleSpec, int]]:
        """
        Find the entry of a module.

        Returns:
            (entry, index) or None when the module has no entry

        Raises:
            NMCHelperError: If the module has more than one entry
        """
        found = None
        for i, entry in enumerate(nmc.spec.modules):
            if entry.namespace == namespace and entry.name == name:
                if found is not None:
                    raise NMCHelperError(
                        f"NMC {nmc.metadata.name} has duplicate entries for module {namespace}/{name}"
                    )
                found = (entry, i)
        return found

    def set_module_config(
        self, nmc: NodeModulesConfig, mld: ModuleLoaderData, module_config: ModuleConfig
    ) -> None:
        """Create or overwrite the entry of mld's module."""
        entry = NodeModuleSpec(
            name=mld.name,
            namespace=mld.namespace,
            config=module_config,
            image_repo_secret=mld.image_repo_secret,
            service_account_name=mld.service_account_name,
        )

        found = self.get_module_spec_entry(nmc, mld.namespace, mld.name)
        if found is None:
            nmc.spec.modules.append(entry)
        else:
            nmc.spec.modules[found[1]] = entry

    def remove_module_config(self, nmc: NodeModulesConfig, namespace: str, name: str) -> None:
        """Drop the entry of a module. A missing entry is not an error."""
        found = self.get_module_spec_entry(nmc, namespace, name)
        if found is None:
            logger.debug(f"Module {namespace}/{name} has no entry in NMC {nmc.metadata.name}")
            return
        del nmc.spec.modules[found[1]]
