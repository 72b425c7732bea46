"""
Request-scoped helpers and service wiring.

Handlers run their checks in a fixed order:
origin guard -> authenticate -> rate limit -> input validation -> service.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request

from sceneaccess.core.auth import Authenticator, build_authenticator
from sceneaccess.core.config import Settings, settings
from sceneaccess.core.errors import OriginRejectedError, RateLimitError, UnauthorizedError, ValidationError
from sceneaccess.core.metrics import perimeter_rejections_total
from sceneaccess.core.origin import OriginGuard
from sceneaccess.core.ratelimit import (
    RateLimiter,
    RateLimitPolicy,
    RateLimitStore,
    build_rate_limit_policies,
    build_rate_limit_store,
)
from sceneaccess.features.billing.events import InMemoryBillingEventStore, SqlBillingEventStore
from sceneaccess.features.billing.service import BillingService, build_provider
from sceneaccess.features.entitlements.memory import (
    InMemoryAdminFlagStore,
    InMemoryFreeSlotStore,
    InMemoryGrantStore,
    InMemorySubscriptionStore,
)
from sceneaccess.features.entitlements.persistence import (
    SqlAdminFlagStore,
    SqlFreeSlotStore,
    SqlGrantStore,
    SqlSubscriptionStore,
)
from sceneaccess.features.entitlements.service import EntitlementResolver
from sceneaccess.features.free_slot.service import FreeSlotGranter
from sceneaccess.features.stats.service import InMemorySessionScoreStore, SqlSessionScoreStore, StatsService
from sceneaccess.models.access import CurrentUser


logger = logging.getLogger("sceneaccess")

M = TypeVar("M", bound=BaseModel)


@dataclass
class Services:
    settings: Settings
    authenticator: Authenticator
    origin_guard: OriginGuard
    rate_limiter: RateLimiter
    resolver: EntitlementResolver
    granter: FreeSlotGranter
    billing: BillingService
    stats: StatsService
    rate_limit_policies: Dict[str, RateLimitPolicy] = field(default_factory=dict)
    stores: Dict[str, object] = field(default_factory=dict)


def build_services(
    cfg: Optional[Settings] = None,
    *,
    rate_limit_store: Optional[RateLimitStore] = None,
    billing_provider=None,
) -> Services:
    """Wire stores and services for the configured backend."""
    cfg = cfg or settings

    if cfg.STORE_BACKEND == "sql":
        grants = SqlGrantStore()
        stores = {
            "admin_flags": SqlAdminFlagStore(),
            "subscriptions": SqlSubscriptionStore(),
            "grants": grants,
            "free_slots": SqlFreeSlotStore(),
            "billing_events": SqlBillingEventStore(),
            "sessions": SqlSessionScoreStore(),
        }
    else:
        grants = InMemoryGrantStore()
        stores = {
            "admin_flags": InMemoryAdminFlagStore(),
            "subscriptions": InMemorySubscriptionStore(),
            "grants": grants,
            "free_slots": InMemoryFreeSlotStore(grants),
            "billing_events": InMemoryBillingEventStore(),
            "sessions": InMemorySessionScoreStore(),
        }

    resolver = EntitlementResolver(
        stores["admin_flags"], stores["subscriptions"], stores["grants"], stores["free_slots"]
    )
    provider = billing_provider if billing_provider is not None else build_provider(cfg)

    return Services(
        settings=cfg,
        authenticator=build_authenticator(cfg),
        origin_guard=OriginGuard(cfg.SITE_URL),
        rate_limiter=RateLimiter(rate_limit_store or build_rate_limit_store(cfg)),
        rate_limit_policies=build_rate_limit_policies(cfg),
        resolver=resolver,
        granter=FreeSlotGranter(resolver, stores["free_slots"]),
        billing=BillingService(provider, stores["billing_events"], stores["grants"], stores["subscriptions"]),
        stats=StatsService(stores["sessions"], half_life_days=cfg.SCORE_HALF_LIFE_DAYS),
        stores=stores,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def enforce_origin(request: Request, services: Services) -> None:
    check = services.origin_guard.check_request(request)
    if check.allowed:
        return
    perimeter_rejections_total.inc(reason=check.reason)
    logger.warning(
        "perimeter.origin_rejected",
        extra={"reason": check.reason, "path": request.url.path, "method": request.method},
    )
    raise OriginRejectedError(check.reason)


def enforce_rate_limit(request: Request, services: Services, operation: str, user: Optional[CurrentUser]) -> None:
    if user is not None:
        identity = f"user:{user.id}"
    else:
        identity = f"ip:{client_ip(request, services.settings.TRUST_FORWARDED_FOR)}"
    policy = services.rate_limit_policies[operation]
    decision = services.rate_limiter.check_policy(f"{operation}:{identity}", policy)
    if decision.allowed:
        return
    perimeter_rejections_total.inc(reason="rate_limited")
    logger.warning(
        "perimeter.rate_limited",
        extra={
            "reason": operation,
            "user_id": user.id if user else None,
            "path": request.url.path,
            "retry_after_ms": decision.retry_after_ms,
        },
    )
    raise RateLimitError(retry_after_seconds=decision.retry_after_seconds)


def require_user(user: Optional[CurrentUser]) -> CurrentUser:
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user


async def parse_body(request: Request, model: Type[M]) -> M:
    """Parse a JSON object body into model; anything else is a 400."""
    raw = await request.body()
    if not raw.strip():
        data = {}
    else:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ValidationError("Malformed request body") from e
    if not isinstance(data, dict):
        raise ValidationError("Malformed request body")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Malformed request body") from e


def clean_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None
