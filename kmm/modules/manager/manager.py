"""
Controller manager: watches, work queue and reconcile workers.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type

from ..api.models import Module, NamespacedName, Node, NodeModulesConfig
from ..client import Client
from ..nmc import module_from_label
from ..reconciler import ModuleNMCReconciler
from .queue import WorkQueue

logger = logging.getLogger(__name__)


def modules_for_nmc(nmc: NodeModulesConfig) -> Set[NamespacedName]:
    """Modules named by the configured and in-use labels of an NMC."""
    keys = set()
    for label in nmc.metadata.labels:
        key = module_from_label(label)
        if key is not None:
            keys.add(key)
    return keys


class ControllerManager:
    """Feeds module keys from cluster events to the reconciler."""

    def __init__(
        self,
        client: Client,
        reconciler: ModuleNMCReconciler,
        queue: WorkQueue,
        workers: int = 1,
        reconcile_timeout: float = 120.0,
        resync_period: float = 600.0,
        watch_retry_delay: float = 5.0,
    ):
        """
        Initialize manager.

        Args:
            client: Object store client
            reconciler: Module reconciler
            queue: Work queue of module keys
            workers: Number of concurrent reconcile workers
            reconcile_timeout: Upper bound of one reconcile pass, in seconds
            resync_period: Interval between full re-enqueues, in seconds
            watch_retry_delay: Pause before re-opening a broken watch, in seconds
        """
        self.client = client
        self.reconciler = reconciler
        self.queue = queue
        self.workers = workers
        self.reconcile_timeout = reconcile_timeout
        self.resync_period = resync_period
        self.watch_retry_delay = watch_retry_delay
        self._tasks: List[asyncio.Task] = []
        self._node_state: Dict[str, Tuple[Dict[str, str], str]] = {}
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def start(self) -> None:
        """Start watches, resync loop and workers."""
        if self._tasks:
            return

        self._tasks.append(asyncio.create_task(self._watch(Module, self._on_module)))
        self._tasks.append(asyncio.create_task(self._watch(NodeModulesConfig, self._on_nmc)))
        self._tasks.append(asyncio.create_task(self._watch(Node, self._on_node)))
        self._tasks.append(asyncio.create_task(self._resync()))
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i)))

        self._ready = True
        logger.info(f"Controller manager started with {self.workers} worker(s)")

    async def stop(self) -> None:
        """Stop all tasks and release the client."""
        self._ready = False
        self.queue.shutdown()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.client.close()
        logger.info("Controller manager stopped")

    # Event handlers

    async def _on_module(self, event_type: str, mod: Module) -> None:
        self.queue.add(mod.namespaced_name)

    async def _on_nmc(self, event_type: str, nmc: NodeModulesConfig) -> None:
        for key in modules_for_nmc(nmc):
            self.queue.add(key)

    async def _on_node(self, event_type: str, node: Node) -> None:
        """
        Re-queue every Module when a node changes in a way selection cares about.

        Logic:
        1. DELETED forgets the node and always fans out
        2. Otherwise fan out only if labels or kernel version differ from
           the last event seen for the node (a first sighting always differs)
        """
        name = node.metadata.name
        if event_type == "DELETED":
            self._node_state.pop(name, None)
            await self.enqueue_all_modules()
            return

        state = (dict(node.metadata.labels), node.kernel_version)
        if self._node_state.get(name) == state:
            logger.debug(f"Node {name} changed without label or kernel updates, skipping")
            return
        self._node_state[name] = state
        await self.enqueue_all_modules()

    async def enqueue_all_modules(self) -> int:
        """Queue every Module. Returns the number of modules queued."""
        modules = await self.client.list(Module)
        for mod in modules:
            self.queue.add(mod.namespaced_name)
        return len(modules)

    # Loops

    async def _watch(
        self, model: Type[Any], handler: Callable[[str, Any], Awaitable[None]]
    ) -> None:
        kind = model.__name__
        while True:
            try:
                async for event_type, obj in self.client.watch(model):
                    await handler(event_type, obj)
                logger.debug(f"Watch on {kind} ended, reopening")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Watch on {kind} failed: {e}")
                await asyncio.sleep(self.watch_retry_delay)

    async def _resync(self) -> None:
        while True:
            await asyncio.sleep(self.resync_period)
            try:
                count = await self.enqueue_all_modules()
                logger.debug(f"Resync queued {count} module(s)")
            except Exception as e:
                logger.error(f"Resync failed: {e}")

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while await self.process_next_item():
            pass
        logger.debug(f"Worker {worker_id} stopped")

    async def process_next_item(self) -> bool:
        """
        Reconcile one key from the queue.

        Returns:
            False once the queue is shut down
        """
        key: Optional[NamespacedName] = await self.queue.get()
        if key is None:
            return False

        try:
            async with asyncio.timeout(self.reconcile_timeout):
                await self.reconciler.reconcile(key)
        except TimeoutError:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Reconcile of module {key} timed out after {self.reconcile_timeout}s, "
                f"retrying in {delay:.3f}s"
            )
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"Reconcile of module {key} failed, retrying in {delay:.3f}s: {e}")
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)

        return True
