"""
Manager Module - Black Box Interface

Purpose: Turn cluster events into reconcile passes
Interface: ControllerManager.start(), .stop(), .ready; WorkQueue
Hidden: Watch reconnection, per-key backoff, worker scheduling

At most one reconcile pass runs per module at a time; different modules
reconcile concurrently.
"""

from .manager import ControllerManager, modules_for_nmc
from .queue import WorkQueue

__all__ = ["ControllerManager", "WorkQueue", "modules_for_nmc"]
