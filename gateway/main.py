"""Main FastAPI application."""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

from gateway.core.config import Settings, get_settings
from gateway.core.container import ServiceContainer
from gateway.core.errors import GatewayError
from gateway.api import audit, health, integrations, tasks, webhooks
from gateway.api.dependencies import error_response
from gateway.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application.

    A prebuilt container is used as is and its lifecycle is left to the
    caller; otherwise one is created and started by the lifespan.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        if container is not None:
            app.state.container = container
            yield
            return

        # Startup
        logger.info("Starting up integration gateway...")
        logger.info(f"Service: {settings.service_name}")
        logger.info(f"Environment: {settings.environment}")
        logger.info(f"Port: {settings.port}")
        app.state.container = await ServiceContainer.create(settings)
        await app.state.container.start()

        yield

        # Shutdown
        logger.info("Shutting down integration gateway...")
        await app.state.container.stop()

    app = FastAPI(
        title="Integration Gateway",
        description="Webhook ingress, sync, health monitoring and approval-gated tasks for third-party integrations",
        version="1.0.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.info(f"{request.method} {request.url.path} failed: {exc.kind.value}: {exc.message}")
        return error_response(exc.to_detail())

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(integrations.router, prefix="/api/v1/integrations", tags=["integrations"])
    app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
    app.include_router(audit.router, prefix="/api/v1/audit", tags=["audit"])
    return app


def run():
    settings = get_settings()
    setup_logging(settings)

    import uvicorn
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.port,
    )


if __name__ == "__main__":
    run()
