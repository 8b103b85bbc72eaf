"""
AsarHook Payload Library API Routes

Endpoints:
- GET  /api/payloads              - List payloads (seeds defaults on first use)
- GET  /api/payloads/content      - Read one payload
- POST /api/payloads              - Create a payload
- POST /api/payloads/init         - Seed default payloads
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.dependencies import get_injector_service
from services.injector_service import InjectorService

router = APIRouter(prefix="/api/payloads", tags=["Payloads"])


class CreatePayloadRequest(BaseModel):
    name: str
    content: str
    category: str = "custom"


@router.get("")
async def list_payloads(service: InjectorService = Depends(get_injector_service)):
    return service.list_payloads()


@router.get("/content")
async def read_payload(path: str = Query(...), service: InjectorService = Depends(get_injector_service)):
    return service.read_payload(path)


@router.post("")
async def create_payload(body: CreatePayloadRequest, service: InjectorService = Depends(get_injector_service)):
    return service.create_payload(body.name, body.content, body.category)


@router.post("/init")
async def init_payloads(service: InjectorService = Depends(get_injector_service)):
    return service.init_payloads()
