"""
AsarHook Registry API Routes

Endpoints:
- POST   /api/registry/start              - Start the call-home listener
- POST   /api/registry/stop               - Stop it
- GET    /api/registry/status             - Running state and target counts
- GET    /api/registry/apps               - Known targets with online flag
- DELETE /api/registry/apps               - Forget all targets
- DELETE /api/registry/apps/{uuid}        - Forget one target
- POST   /api/registry/apps/{uuid}/ports  - Assign a control/monitor port
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_registry_service
from services.registry_service import RegistryService
from shared.constants import PortKind

router = APIRouter(prefix="/api/registry", tags=["Registry"])


class StartRegistryRequest(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=0, le=65535)


class AssignPortRequest(BaseModel):
    kind: PortKind = PortKind.MONITOR


@router.post("/start")
async def start_registry(
    body: Optional[StartRegistryRequest] = None,
    service: RegistryService = Depends(get_registry_service),
):
    body = body or StartRegistryRequest()
    return await service.start(body.host, body.port)


@router.post("/stop")
async def stop_registry(service: RegistryService = Depends(get_registry_service)):
    return await service.stop()


@router.get("/status")
async def registry_status(service: RegistryService = Depends(get_registry_service)):
    return service.status()


@router.get("/apps")
async def list_apps(service: RegistryService = Depends(get_registry_service)):
    return service.apps()


@router.delete("/apps")
async def clear_apps(service: RegistryService = Depends(get_registry_service)):
    return service.clear()


@router.delete("/apps/{uuid}")
async def remove_app(uuid: str, service: RegistryService = Depends(get_registry_service)):
    return service.remove(uuid)


@router.post("/apps/{uuid}/ports")
async def assign_port(uuid: str, body: AssignPortRequest, service: RegistryService = Depends(get_registry_service)):
    return service.assign_port(uuid, body.kind.value)
