"""
In-process stores.

Used by default in development and by the test suite. State is lost on
restart and not shared between replicas.
"""

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sceneaccess.features.entitlements.stores import Lookup
from sceneaccess.models.access import AccessGrant, ConsumeResult, FreeSlotState, GrantType
from sceneaccess.models.billing import SubscriptionSnapshot


class InMemoryAdminFlagStore:
    def __init__(self, admins: Iterable[str] = ()):
        self._admins = set(admins)

    def set_admin(self, user_id: str, is_admin: bool = True) -> None:
        if is_admin:
            self._admins.add(user_id)
        else:
            self._admins.discard(user_id)

    async def is_admin(self, user_id: str) -> Lookup[bool]:
        return Lookup.hit(user_id in self._admins)


class InMemorySubscriptionStore:
    def __init__(self):
        self._by_subscription_id: Dict[str, SubscriptionSnapshot] = {}

    async def has_active_subscription(self, user_id: str, now: datetime) -> Lookup[bool]:
        active = any(
            snap.user_id == user_id and snap.is_active(now)
            for snap in self._by_subscription_id.values()
        )
        return Lookup.hit(active)

    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> None:
        self._by_subscription_id[snapshot.stripe_subscription_id] = snapshot


class InMemoryGrantStore:
    def __init__(self):
        self._grants: List[AccessGrant] = []
        self._ids = itertools.count(1)

    @property
    def grants(self) -> List[AccessGrant]:
        return list(self._grants)

    def _matches(self, grant: AccessGrant, user_id: str, access_type: GrantType, scene_id, work_id) -> bool:
        if grant.user_id != user_id or grant.access_type != access_type:
            return False
        return (scene_id is not None and grant.scene_id == scene_id) or (
            work_id is not None and grant.work_id == work_id
        )

    async def find_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
    ) -> Lookup[AccessGrant]:
        for grant in self._grants:
            if self._matches(grant, user_id, access_type, scene_id, work_id):
                return Lookup.hit(grant)
        return Lookup.miss()

    def add(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> AccessGrant:
        if (scene_id is None) == (work_id is None):
            raise ValueError("Exactly one of scene_id or work_id must be set")
        if purchase_id is not None:
            for grant in self._grants:
                if grant.purchase_id == purchase_id:
                    return grant
        grant = AccessGrant(
            id=next(self._ids),
            user_id=user_id,
            access_type=access_type,
            scene_id=scene_id,
            work_id=work_id,
            purchase_id=purchase_id,
            created_at=datetime.now(timezone.utc),
        )
        self._grants.append(grant)
        return grant

    async def create_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> AccessGrant:
        return self.add(user_id, access_type, scene_id=scene_id, work_id=work_id, purchase_id=purchase_id)


class InMemoryFreeSlotStore:
    """Free-slot state; the compare-and-set runs under one asyncio.Lock."""

    def __init__(self, grants: InMemoryGrantStore):
        self._grants = grants
        self._states: Dict[str, FreeSlotState] = {}
        self._lock = asyncio.Lock()

    async def get_state(self, user_id: str) -> Lookup[FreeSlotState]:
        return Lookup.of(self._states.get(user_id))

    async def consume_if_unused(self, user_id: str, scene_id: str) -> ConsumeResult:
        async with self._lock:
            existing = self._states.get(user_id)
            if existing is not None:
                return ConsumeResult(already_consumed=True, state=existing)
            state = FreeSlotState(user_id=user_id, scene_id=scene_id, consumed_at=datetime.now(timezone.utc))
            self._states[user_id] = state
            self._grants.add(user_id, GrantType.FREE_SLOT, scene_id=scene_id)
            return ConsumeResult(already_consumed=False, state=state)
