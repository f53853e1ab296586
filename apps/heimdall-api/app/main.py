import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.api.sandbox import router as sandbox_router
from runtime.config import SandboxConfig
from runtime.coordinator import SandboxCoordinator

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = os.environ.get("HEIMDALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def create_app(coordinator: Optional[SandboxCoordinator] = None) -> FastAPI:
    """Build the HTTP adapter. Without ``coordinator`` one is created from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _configure_logging()
        owned = coordinator is None
        app.state.coordinator = coordinator or SandboxCoordinator(SandboxConfig.from_env())
        logger.info(f"Heimdall sandbox API ready (workspace {app.state.coordinator.fs.root})")
        try:
            yield
        finally:
            if owned:
                await app.state.coordinator.aclose()

    app = FastAPI(title="Heimdall Sandbox", lifespan=lifespan)
    app.include_router(sandbox_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


def run() -> None:
    import uvicorn

    host = os.environ.get("HEIMDALL_HOST", "127.0.0.1")
    port = int(os.environ.get("HEIMDALL_PORT", "8080"))
    uvicorn.run(create_app(), host=host, port=port)
