"""Virtual key endpoint: POST /api/keys.

Issues a scoped gateway key; clients pass it back as ``gateway_key`` on
``POST /api/chat``.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from llmchat.api.chat import error_response
from llmchat.providers import GatewayClient

router = APIRouter(prefix="/api", tags=["keys"])

_log = structlog.get_logger(__name__)


class KeyRequest(BaseModel):
    """Body of ``POST /api/keys``; unset fields are left to the gateway."""

    user_id: str | None = None
    team_id: str | None = None
    models: list[str] | None = None
    duration: str | None = None
    max_budget: float | None = Field(default=None, ge=0)
    tags: list[str] | None = None


def get_gateway(request: Request) -> GatewayClient:
    gateway: GatewayClient | None = getattr(request.app.state, "gateway", None)
    if gateway is None or not gateway.is_configured:
        raise HTTPException(status_code=400, detail="Model gateway is not configured")
    return gateway


@router.post("/keys")
async def issue_key(body: KeyRequest, gateway: GatewayClient = Depends(get_gateway)) -> dict:
    """Generate a virtual key and describe the models and features it unlocks."""
    try:
        key = await gateway.request_key(**body.model_dump(exclude_none=True))
    except Exception as exc:
        _log.error("key_request_error", error_type=type(exc).__name__, error=str(exc))
        raise error_response(exc) from exc
    return key.to_dict()
