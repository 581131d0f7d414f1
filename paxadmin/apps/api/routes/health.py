from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from paxadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from paxadmin.apps.api.response import SuccessEnvelope, success_response
from paxadmin.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str


# Liveness only; tenant database health lives under /provisioning.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", service=get_settings().app_name)
    return success_response(request=request, data=payload)
