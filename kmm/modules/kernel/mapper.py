"""
Kernel version to module build configuration mapping.

A Module lists kernel mappings, each selecting kernels by literal version
or regular expression. The first mapping that matches a node's kernel wins;
its fields override the container-level defaults and the container image
may reference the kernel version through ${KERNEL_*} variables.
"""

import logging
import re
from typing import Dict, Optional

from ..api.models import KernelMapping, Module, ModuleLoaderData

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)")
VARIABLE_PATTERN = re.compile(r"\$\{(\w+)\}")


class KernelMapperError(Exception):
    """Module configuration cannot be resolved for a kernel."""


class NoMatchingKernelMappingError(KernelMapperError):
    """No mapping applies to the kernel version. Expected, not a failure."""


def kernel_variables(kernel_version: str) -> Dict[str, str]:
    """Variables available to container image templates."""
    variables = {
        "KERNEL_FULL_VERSION": kernel_version,
        "KERNEL_VERSION": kernel_version,
    }
    match = VERSION_PATTERN.match(kernel_version)
    if match:
        x, y, z = match.groups()
        variables.update({
            "KERNEL_XYZ": f"{x}.{y}.{z}",
            "KERNEL_X": x,
            "KERNEL_Y": y,
            "KERNEL_Z": z,
        })
    return variables


def substitute(template: str, variables: Dict[str, str]) -> str:
    """Replace ${VAR} references; unknown variables are left untouched."""
    return VARIABLE_PATTERN.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


class KernelMapper:
    """Resolves a Module into ModuleLoaderData for a given kernel."""

    def find_mapping(self, module: Module, kernel_version: str) -> KernelMapping:
        """
        Select the mapping for a kernel version.

        Raises:
            NoMatchingKernelMappingError: If no mapping matches
            KernelMapperError: If a mapping is invalid
        """
        for mapping in module.spec.module_loader.container.kernel_mappings:
            if mapping.literal:
                if mapping.literal == kernel_version:
                    return mapping
                continue

            if not mapping.regexp:
                raise KernelMapperError(
                    f"kernel mapping of module {module.namespaced_name} "
                    "has neither literal nor regexp"
                )

            try:
                if re.search(mapping.regexp, kernel_version):
                    return mapping
            except re.error as err:
                raise KernelMapperError(
                    f"invalid regexp {mapping.regexp!r} in module {module.namespaced_name}: {err}"
                ) from err

        raise NoMatchingKernelMappingError(
            f"no kernel mapping of module {module.namespaced_name} matches {kernel_version}"
        )

    def get_module_loader_data_for_kernel(
        self, module: Module, kernel_version: str
    ) -> ModuleLoaderData:
        """
        Resolve module configuration for a kernel version.

        Args:
            module: Module to resolve
            kernel_version: Kernel running on the node

        Returns:
            Resolved ModuleLoaderData

        Raises:
            NoMatchingKernelMappingError: If no mapping applies
            KernelMapperError: If the matching configuration is unusable
        """
        mapping = self.find_mapping(module, kernel_version)
        container = module.spec.module_loader.container

        image: Optional[str] = mapping.container_image or container.container_image
        if not image:
            raise KernelMapperError(
                f"no container image for module {module.namespaced_name} "
                f"and kernel {kernel_version}"
            )

        mld = ModuleLoaderData(
            name=module.metadata.name,
            namespace=module.metadata.namespace or "",
            kernel_version=kernel_version,
            container_image=substitute(image, kernel_variables(kernel_version)),
            in_tree_module_to_remove=(
                mapping.in_tree_module_to_remove or container.in_tree_module_to_remove
            ),
            modprobe=container.modprobe,
            registry_tls=mapping.registry_tls or container.registry_tls,
            image_repo_secret=module.spec.image_repo_secret,
            service_account_name=module.spec.module_loader.service_account_name,
            owner=module,
        )
        logger.debug(f"Resolved {module.namespaced_name} for kernel {kernel_version}: {mld.container_image}")
        return mld
