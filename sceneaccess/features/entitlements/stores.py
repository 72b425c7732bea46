"""
Store contracts consumed by the entitlement resolver and the free-slot granter.

Reads return a Lookup so that "nothing there" and "could not read" stay
distinguishable all the way up to the resolver. Writes raise StorageError.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, Protocol, TypeVar

from sceneaccess.models.access import AccessGrant, ConsumeResult, FreeSlotState, GrantType
from sceneaccess.models.billing import SubscriptionSnapshot


T = TypeVar("T")


@dataclass(frozen=True)
class Lookup(Generic[T]):
    """Result of a store read: found, not found, or failed."""

    value: Optional[T] = None
    found: bool = False
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def hit(cls, value: T) -> "Lookup[T]":
        return cls(value=value, found=True)

    @classmethod
    def miss(cls) -> "Lookup[T]":
        return cls()

    @classmethod
    def failure(cls, error: BaseException) -> "Lookup[T]":
        return cls(error=error)

    @classmethod
    def of(cls, value: Optional[T]) -> "Lookup[T]":
        return cls.miss() if value is None else cls.hit(value)


class AdminFlagStore(Protocol):
    async def is_admin(self, user_id: str) -> Lookup[bool]:
        ...


class SubscriptionStore(Protocol):
    async def has_active_subscription(self, user_id: str, now: datetime) -> Lookup[bool]:
        ...

    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> None:
        ...


class GrantStore(Protocol):
    async def find_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
    ) -> Lookup[AccessGrant]:
        """Match on scene_id and/or work_id; either match counts."""
        ...

    async def create_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> AccessGrant:
        """Insert a grant. A repeated purchase_id returns the existing grant."""
        ...


class FreeSlotStore(Protocol):
    async def get_state(self, user_id: str) -> Lookup[FreeSlotState]:
        ...

    async def consume_if_unused(self, user_id: str, scene_id: str) -> ConsumeResult:
        """
        Atomically bind the user's free slot to scene_id and record the matching
        free_slot grant. Returns already_consumed=True with the existing state when
        the slot was taken earlier, including by a concurrent call.
        """
        ...
