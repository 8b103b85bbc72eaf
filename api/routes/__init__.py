"""
API Routes Package
"""

from fastapi import APIRouter
from api.routes.injector import router as injector_router  # Setup, inject, hook, backups, integrity
from api.routes.payloads import router as payloads_router  # Payload library
from api.routes.registry import router as registry_router  # Call-home registry lifecycle
from api.routes.targets import router as targets_router  # RCE, monitor and cookies per target
from api.routes.health import router as health_router

api_router = APIRouter()
api_router.include_router(injector_router)
api_router.include_router(payloads_router)
api_router.include_router(registry_router)
api_router.include_router(targets_router)
api_router.include_router(health_router)

__all__ = ["api_router"]
