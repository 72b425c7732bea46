"""
sceneaccess/features/entitlements/service.py

Entitlement resolution for one user and one scene.

Grant sources are consulted in a fixed order, first match wins:
admin -> subscription -> purchase (scene or work) -> free slot on this scene.
Rules run one after another; a failed lookup aborts the whole resolution.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from sceneaccess.core.errors import EntitlementResolutionError
from sceneaccess.core.metrics import access_checks_total
from sceneaccess.features.entitlements.stores import (
    AdminFlagStore,
    FreeSlotStore,
    GrantStore,
    Lookup,
    SubscriptionStore,
)
from sceneaccess.models.access import AccessCheckResult, AccessType, CurrentUser, GrantType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessQuery:
    user_id: str
    scene_id: str
    work_id: Optional[str]
    now: datetime


@dataclass(frozen=True)
class AccessRule:
    """One row of the precedence table: grants access_type when predicate holds."""
    access_type: AccessType
    predicate: Callable[[AccessQuery], Awaitable[Lookup]]


def _require(lookup: Lookup, source: str) -> Lookup:
    if lookup.failed:
        logger.warning("access.lookup_failed", extra={"reason": source, "error_code": "resolution_failed"})
        raise EntitlementResolutionError("Could not determine access") from lookup.error
    return lookup


class EntitlementResolver:
    def __init__(
        self,
        admin_flags: AdminFlagStore,
        subscriptions: SubscriptionStore,
        grants: GrantStore,
        free_slots: FreeSlotStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.admin_flags = admin_flags
        self.subscriptions = subscriptions
        self.grants = grants
        self.free_slots = free_slots
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rules: Sequence[AccessRule] = (
            AccessRule(AccessType.ADMIN, self._is_admin),
            AccessRule(AccessType.SUBSCRIPTION, self._has_subscription),
            AccessRule(AccessType.PURCHASE, self._has_purchase),
            AccessRule(AccessType.FREE_SLOT, self._has_free_slot_on_scene),
        )

    async def _is_admin(self, query: AccessQuery) -> Lookup:
        return await self.admin_flags.is_admin(query.user_id)

    async def _has_subscription(self, query: AccessQuery) -> Lookup:
        return await self.subscriptions.has_active_subscription(query.user_id, query.now)

    async def _has_purchase(self, query: AccessQuery) -> Lookup:
        return await self.grants.find_grant(
            query.user_id, GrantType.PURCHASE, scene_id=query.scene_id, work_id=query.work_id
        )

    async def _has_free_slot_on_scene(self, query: AccessQuery) -> Lookup:
        return await self.grants.find_grant(query.user_id, GrantType.FREE_SLOT, scene_id=query.scene_id)

    async def resolve(self, user_id: str, scene_id: str, work_id: Optional[str] = None) -> AccessCheckResult:
        query = AccessQuery(user_id=user_id, scene_id=scene_id, work_id=work_id, now=self.clock())
        for rule in self.rules:
            lookup = _require(await rule.predicate(query), rule.access_type.value)
            if lookup.found and lookup.value is not False:
                return AccessCheckResult.granted(rule.access_type)

        state = _require(await self.free_slots.get_state(user_id), "free_slot")
        return AccessCheckResult.denied(can_use_free_slot=not state.found)

    async def check_access(
        self,
        user: Optional[CurrentUser],
        scene_id: str,
        work_id: Optional[str] = None,
    ) -> AccessCheckResult:
        """Resolve access for user (None = anonymous) to scene_id, optionally inside work_id."""
        if user is None:
            result = AccessCheckResult.denied(can_use_free_slot=False)
        else:
            try:
                result = await self.resolve(user.id, scene_id, work_id)
            except EntitlementResolutionError:
                logger.error(
                    "access.resolution_failed",
                    extra={"user_id": user.id, "scene_id": scene_id, "work_id": work_id, "error_code": "resolution_failed"},
                )
                raise

        access_checks_total.inc(access_type=result.access_type.value)
        logger.info(
            "access.checked",
            extra={
                "user_id": user.id if user else None,
                "scene_id": scene_id,
                "work_id": work_id,
                "access_type": result.access_type.value,
            },
        )
        return result
