"""
AsarHook Health Check API Routes

Endpoints:
- GET /api/health   - Basic health check with registry summary
"""

import logging
import platform
import sys
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_registry_service
from services.registry_service import RegistryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health", tags=["Health"])


class BasicHealthResponse(BaseModel):
    """Basic health check response"""
    status: str
    timestamp: str
    version: str = "1.0.0"
    python: str
    platform: str
    registry: Dict[str, Any]


@router.get("", response_model=BasicHealthResponse)
async def health(registry: RegistryService = Depends(get_registry_service)):
    """Health check endpoint"""
    return BasicHealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat(),
        python=platform.python_version(),
        platform=sys.platform,
        registry=registry.status(),
    )
