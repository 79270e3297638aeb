"""
KMM Operator - Module/NodeModulesConfig controller

Runs the reconcile manager and serves liveness and readiness probes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from kmm import __version__
from kmm.config.provider import ConfigProvider, load_config_provider
from kmm.logging_config import configure_logging, get_logging_config
from kmm.modules.api import default_scheme
from kmm.modules.client import KubernetesClient
from kmm.modules.kernel import KernelMapper
from kmm.modules.manager import ControllerManager, WorkQueue
from kmm.modules.nmc import NMCHelper
from kmm.modules.reconciler import ModuleNMCReconciler, ModuleNMCReconcilerHelper
from kmm.modules.registry import Registry, RegistryAuthGetterFactory

logger = logging.getLogger(__name__)

ManagerFactory = Callable[[ConfigProvider], Awaitable[ControllerManager]]


async def build_manager(provider: ConfigProvider) -> ControllerManager:
    """
    Wire the controller from configuration.

    Args:
        provider: Configuration source

    Returns:
        Manager ready to be started
    """
    controller_config = provider.get_controller_config()
    registry_config = provider.get_registry_config()

    scheme = default_scheme()
    client = await KubernetesClient.from_environment(scheme, controller_config.kubeconfig)

    helper = ModuleNMCReconcilerHelper(
        client=client,
        kernel_mapper=KernelMapper(),
        registry=Registry(timeout=registry_config.timeout),
        nmc_helper=NMCHelper(client),
        auth_factory=RegistryAuthGetterFactory(client),
        scheme=scheme,
    )
    queue = WorkQueue(
        base_delay=controller_config.requeue_base_delay,
        max_delay=controller_config.requeue_max_delay,
    )
    return ControllerManager(
        client=client,
        reconciler=ModuleNMCReconciler(helper),
        queue=queue,
        workers=controller_config.workers,
        reconcile_timeout=controller_config.reconcile_timeout,
        resync_period=controller_config.resync_period,
    )


def create_app(
    provider: ConfigProvider, manager_factory: ManagerFactory = build_manager
) -> FastAPI:
    """Build the probe server; the manager lives inside its lifespan."""
    state = {"manager": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting KMM operator...")
        manager: Optional[ControllerManager] = await manager_factory(provider)
        state["manager"] = manager
        await manager.start()
        logger.info("KMM operator started successfully")

        yield

        logger.info("Shutting down KMM operator...")
        await manager.stop()
        state["manager"] = None
        logger.info("KMM operator shutdown complete")

    app = FastAPI(
        title="KMM Operator",
        description="Kernel module management controller",
        version=__version__,
        lifespan=lifespan,
    )

    @app.get("/healthz")
    async def healthz():
        """
        Liveness probe.

        Returns:
            200: Process is running
        """
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """
        Readiness probe.

        Returns:
            200: Manager is running
            503: Manager not started yet
        """
        manager = state["manager"]
        if manager is not None and manager.ready:
            return {"status": "ready"}
        return JSONResponse(status_code=503, content={"status": "not ready"})

    return app


def main():
    provider = load_config_provider()
    log_level = provider.get_log_level()
    configure_logging(log_level)

    health_config = provider.get_health_config()
    app = create_app(provider)
    uvicorn.run(
        app,
        host=health_config.host,
        port=health_config.port,
        log_config=get_logging_config(log_level),
    )


if __name__ == "__main__":
    main()
