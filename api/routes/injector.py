"""
AsarHook Injector API Routes

Endpoints:
- POST   /api/inject/setup           - Inject the passthrough agent
- POST   /api/inject/payload         - Inject an agent file (backs up first)
- POST   /api/inject/hook            - Render and inject the call-home agent
- GET    /api/backups                - List backups, newest first (?archive_path= narrows)
- POST   /api/backups/restore        - Restore a backup over its archive
- DELETE /api/backups/{name}         - Delete a backup
- GET    /api/archive/info           - Header size, hash and file count
- POST   /api/integrity/validate     - Stored vs computed header hash
- POST   /api/integrity/bypass       - Rebind the launcher to the archive
- POST   /api/integrity/restore      - Restore `.backup` siblings
- POST   /api/integrity/probe        - Launch and parse the integrity failure
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_injector_service
from services.injector_service import InjectorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Injector"])


# ============== Request Models ==============

class SetupRequest(BaseModel):
    archive_path: str


class InjectRequest(BaseModel):
    archive_path: str
    agent_path: str
    entry_script: Optional[str] = None


class HookRequest(BaseModel):
    archive_path: str
    uuid: Optional[str] = None
    debug_port: Optional[int] = Field(default=None, ge=1, le=65535)
    enable_call_home: bool = True
    entry_script: Optional[str] = None


class RestoreBackupRequest(BaseModel):
    backup: str
    archive_path: str


class IntegrityRequest(BaseModel):
    binary_path: str
    archive_path: str
    create_backups: bool = True


class ProbeRequest(BaseModel):
    binary_path: str
    timeout: float = Field(default=10.0, gt=0, le=120)


# ============== Injection ==============

@router.post("/inject/setup")
async def setup(body: SetupRequest, service: InjectorService = Depends(get_injector_service)):
    return service.setup(body.archive_path)


@router.post("/inject/payload")
async def inject_payload(body: InjectRequest, service: InjectorService = Depends(get_injector_service)):
    return service.inject(body.agent_path, body.archive_path, body.entry_script)


@router.post("/inject/hook")
async def inject_hook(body: HookRequest, service: InjectorService = Depends(get_injector_service)):
    return service.hook(
        body.archive_path,
        app_uuid=body.uuid,
        debug_port=body.debug_port,
        enable_call_home=body.enable_call_home,
        entry_script=body.entry_script,
    )


# ============== Backups ==============

@router.get("/backups")
async def list_backups(
    archive_path: Optional[str] = Query(None),
    service: InjectorService = Depends(get_injector_service),
):
    return service.list_backups(archive_path)


@router.post("/backups/restore")
async def restore_backup(body: RestoreBackupRequest, service: InjectorService = Depends(get_injector_service)):
    return service.restore_backup(body.backup, body.archive_path)


@router.delete("/backups/{name}")
async def delete_backup(name: str, service: InjectorService = Depends(get_injector_service)):
    return service.delete_backup(name)


# ============== Integrity ==============

@router.get("/archive/info")
async def archive_info(path: str = Query(...), service: InjectorService = Depends(get_injector_service)):
    return service.archive_info(path)


@router.post("/integrity/validate")
async def validate_integrity(body: IntegrityRequest, service: InjectorService = Depends(get_injector_service)):
    return service.validate_integrity(body.binary_path, body.archive_path)


@router.post("/integrity/bypass")
async def bypass_integrity(body: IntegrityRequest, service: InjectorService = Depends(get_injector_service)):
    return service.bypass(body.binary_path, body.archive_path, create_backups=body.create_backups)


@router.post("/integrity/restore")
async def restore_integrity(body: IntegrityRequest, service: InjectorService = Depends(get_injector_service)):
    return service.restore_integrity(body.binary_path, body.archive_path)


@router.post("/integrity/probe")
async def probe_integrity(body: ProbeRequest, service: InjectorService = Depends(get_injector_service)):
    return await service.probe(body.binary_path, body.timeout)
