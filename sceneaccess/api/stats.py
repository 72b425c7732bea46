from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from sceneaccess.api.deps import Services, enforce_rate_limit, get_services, require_user


router = APIRouter(prefix="/stats", tags=["stats"])


class ScoreResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    score: float
    half_life_days: float = Field(..., alias="halfLifeDays")


@router.get("/score", response_model=ScoreResponse, response_model_by_alias=True)
async def recency_score(request: Request, services: Services = Depends(get_services)):
    """Caller's recency-weighted average score on the 0-10 scale."""
    user = require_user(services.authenticator.get_current_user(request))
    enforce_rate_limit(request, services, "stats", user)

    score = await services.stats.recency_score(user.id)
    return ScoreResponse(score=round(score, 4), half_life_days=services.stats.half_life_days)
