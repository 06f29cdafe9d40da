"""
Shop connection endpoints
Install URL issuing, credential hand-over after OAuth, and disconnect.

The token exchange itself happens in the embedded app; this service only
checks the state it issued and stores the resulting access token.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from routers.catalog import require_shop
from services.errors import InvalidOAuthState
from services.mystery_box_service import MysteryBoxService, get_mystery_box_service
from services.oauth_state import OAuthStateStore
from services.shopify_client import build_install_url
import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def get_oauth_states(request: Request) -> OAuthStateStore:
    return request.app.state.oauth_states


class ConnectRequest(BaseModel):
    shop: str = Field(..., min_length=1, max_length=255)
    state: str = Field(..., min_length=1, max_length=255)
    access_token: str = Field(..., alias="accessToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


@router.get("/install")
async def install(
    shop_id: str = Depends(require_shop),
    states: OAuthStateStore = Depends(get_oauth_states),
):
    if not settings.SHOPIFY_API_KEY:
        raise HTTPException(status_code=503, detail="Shopify app credentials are not configured")
    state = states.issue(shop_id)
    url = build_install_url(
        shop_id,
        state,
        api_key=settings.SHOPIFY_API_KEY,
        scopes=settings.SHOPIFY_SCOPES,
        redirect_uri=f"{settings.APP_URL.rstrip('/')}/auth/callback",
    )
    logger.info("[auth] issued install url shop=%s", shop_id)
    return {"installUrl": url, "state": state}


@router.post("/connect")
async def connect(
    request: ConnectRequest,
    states: OAuthStateStore = Depends(get_oauth_states),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    shop_id = settings.sanitize_shop_id(request.shop)
    issued_for = states.consume(request.state)
    if issued_for is None or issued_for != shop_id:
        logger.warning("[auth] rejected oauth state for shop=%s", shop_id)
        raise InvalidOAuthState()
    await service.connect_shop(shop_id, request.access_token)
    return {"success": True, "shop": shop_id}


@router.delete("/disconnect")
async def disconnect(
    shop_id: str = Depends(require_shop),
    service: MysteryBoxService = Depends(get_mystery_box_service),
):
    removed = await service.disconnect_shop(shop_id)
    return {"success": True, "removedProducts": removed}
