"""
Reconciler Module - Black Box Interface

Purpose: Converge each node's NodeModulesConfig with the Module objects
Interface: ModuleNMCReconciler.reconcile(), ModuleNMCReconcilerHelper
Hidden: Scheduling decisions, minimal patches, the deletion barrier

A reconcile pass keeps no state of its own. Everything it needs to resume
is visible in the cluster: the NMC entries plus the configured and in-use
labels.
"""

from .helper import MODULE_FINALIZER, AggregateError, ModuleNMCReconcilerHelper, ReconcileError
from .reconciler import ModuleNMCReconciler, ReconcileResult
from .scheduling import SchedulingData, SchedulingResult, prepare_scheduling_data

__all__ = [
    "MODULE_FINALIZER",
    "AggregateError",
    "ModuleNMCReconcilerHelper",
    "ReconcileError",
    "ModuleNMCReconciler",
    "ReconcileResult",
    "SchedulingData",
    "SchedulingResult",
    "prepare_scheduling_data",
]
