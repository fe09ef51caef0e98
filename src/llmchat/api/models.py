"""Model catalog and error-classification endpoints."""

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from llmchat.api.chat import get_service
from llmchat.providers import ChatService, ProviderError

router = APIRouter(prefix="/api", tags=["models"])

_log = structlog.get_logger(__name__)


class ClassifyRequest(BaseModel):
    message: str


@router.get("/models")
async def list_models(service: ChatService = Depends(get_service)) -> dict:
    """Built-in models merged with whatever the gateway currently offers."""
    models = await service.list_models()
    return {
        "models": [m.to_dict() for m in models],
        "gateway_enabled": service.catalog.gateway_configured,
    }


@router.post("/models/refresh")
async def refresh_models(service: ChatService = Depends(get_service)) -> dict:
    if not service.catalog.gateway_configured:
        raise HTTPException(status_code=400, detail="Model gateway is not configured")
    models = await service.refresh_models()
    _log.info("catalog_refresh_requested", models=len(models))
    return {"models": [m.to_dict() for m in models], "gateway_enabled": True}


@router.post("/errors/classify")
async def classify_error(
    body: ClassifyRequest, service: ChatService = Depends(get_service)
) -> dict:
    """Classify a raw error message the way provider failures are classified."""
    return service.classify(ProviderError(body.message)).to_dict()
