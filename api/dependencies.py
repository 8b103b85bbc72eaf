"""
FastAPI Dependencies
Services are created once per application and stored on app.state.
"""

from fastapi import Request

from services.injector_service import InjectorService
from services.registry_service import RegistryService
from services.target_service import TargetService


def get_injector_service(request: Request) -> InjectorService:
    return request.app.state.injector_service


def get_registry_service(request: Request) -> RegistryService:
    return request.app.state.registry_service


def get_target_service(request: Request) -> TargetService:
    return request.app.state.target_service
