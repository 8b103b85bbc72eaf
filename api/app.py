"""
AsarHook - Operator API Application
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import api_router
from services.injector_service import InjectorService
from services.registry_service import RegistryService
from services.target_service import TargetService
from shared.settings import AsarHookSettings, get_settings

logger = logging.getLogger(__name__)


def create_app(settings: Optional[AsarHookSettings] = None, start_registry: bool = False) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown"""
        logger.info("Starting AsarHook operator API")
        if start_registry:
            result = await app.state.registry_service.start()
            if not result.get("success"):
                logger.warning(f"Registry not started: {result.get('error')}")

        yield

        logger.info("Shutting down AsarHook operator API")
        await app.state.registry_service.stop()

    app = FastAPI(
        title="AsarHook Operator API",
        version="1.0.0",
        lifespan=lifespan,
    )

    registry_service = RegistryService(settings)
    app.state.settings = settings
    app.state.injector_service = InjectorService(settings)
    app.state.registry_service = registry_service
    app.state.target_service = TargetService(registry_service.registry, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    return app


if __name__ == '__main__':
    import uvicorn
    _settings = get_settings()
    uvicorn.run(create_app(_settings, start_registry=True), host=_settings.API_HOST, port=_settings.API_PORT)
