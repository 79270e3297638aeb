"""
Kernel Module - Black Box Interface

Purpose: Resolve a Module's build configuration for a kernel version
Interface: KernelMapper.get_module_loader_data_for_kernel()
Hidden: Mapping selection, image template substitution

"No matching mapping" is an expected outcome, reported with its own
exception type so callers can tell it from real failures.
"""

from .mapper import KernelMapper, KernelMapperError, NoMatchingKernelMappingError

__all__ = ["KernelMapper", "KernelMapperError", "NoMatchingKernelMappingError"]
