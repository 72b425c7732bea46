"""
Access API routes.

- POST /api/access/check: resolve access to a scene (anonymous callers allowed)
- POST /api/access/grant-free-slot: spend the caller's one free slot on a scene
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from sceneaccess.api.deps import (
    Services,
    clean_id,
    enforce_origin,
    enforce_rate_limit,
    get_services,
    parse_body,
    require_user,
)
from sceneaccess.core.errors import ValidationError


router = APIRouter(prefix="/access", tags=["access"])


class AccessCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scene_id: Optional[str] = Field(None, alias="sceneId")
    work_id: Optional[str] = Field(None, alias="workId")


class AccessCheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_access: bool = Field(..., alias="hasAccess")
    access_type: str = Field(..., alias="accessType")
    can_use_free_slot: bool = Field(..., alias="canUseFreeSlot")


class GrantFreeSlotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scene_id: Optional[str] = Field(None, alias="sceneId")


class GrantFreeSlotResponse(BaseModel):
    success: bool


def _require_scene_id(value: Optional[str]) -> str:
    scene_id = clean_id(value)
    if not scene_id:
        raise ValidationError("sceneId is required")
    return scene_id


@router.post("/check", response_model=AccessCheckResponse, response_model_by_alias=True)
async def check_access(request: Request, services: Services = Depends(get_services)):
    """
    Resolve access for the caller.

    Anonymous callers get 200 with hasAccess=false.

    Errors:
        400: sceneId missing
        403: Origin/Referer mismatch
        429: Rate limited (Retry-After in seconds)
        500: Access could not be determined
    """
    enforce_origin(request, services)
    user = services.authenticator.get_current_user(request)
    enforce_rate_limit(request, services, "access_check", user)

    body = await parse_body(request, AccessCheckRequest)
    scene_id = _require_scene_id(body.scene_id)

    result = await services.resolver.check_access(user, scene_id, clean_id(body.work_id))
    return AccessCheckResponse(
        has_access=result.has_access,
        access_type=result.access_type.value,
        can_use_free_slot=result.can_use_free_slot,
    )


@router.post("/grant-free-slot", response_model=GrantFreeSlotResponse)
async def grant_free_slot(request: Request, services: Services = Depends(get_services)):
    """
    Bind the caller's free slot to a scene. Repeated calls report success
    and keep the first scene.

    Errors:
        401: Not authenticated
        400: sceneId missing
        403: Origin/Referer mismatch
        429: Rate limited
        500: Storage failure
    """
    enforce_origin(request, services)
    user = require_user(services.authenticator.get_current_user(request))
    enforce_rate_limit(request, services, "free_slot", user)

    body = await parse_body(request, GrantFreeSlotRequest)
    scene_id = _require_scene_id(body.scene_id)

    result = await services.granter.grant(user.id, scene_id)
    return GrantFreeSlotResponse(success=result.success)
