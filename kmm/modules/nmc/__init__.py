"""
NMC Module - Black Box Interface

Purpose: NodeModulesConfig label naming and per-module entry mutation
Interface: module_configured_label(), module_in_use_label(), NMCHelper
Hidden: Label format, entry lookup

The label functions are shared with the node agent; both sides must agree
on the format.
"""

from .helper import NMCHelper, NMCHelperError
from .labels import module_configured_label, module_from_label, module_in_use_label

__all__ = [
    "NMCHelper",
    "NMCHelperError",
    "module_configured_label",
    "module_from_label",
    "module_in_use_label",
]
