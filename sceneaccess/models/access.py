"""
sceneaccess/models/access.py

Entitlement domain models.

Grant sources, in precedence order:
- admin: administrator override (admin_flags)
- subscription: active paid subscription
- purchase: per-scene or per-work purchase grant
- free_slot: the one promotional scene every user may unlock once
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessType(str, Enum):
    NONE = "none"
    ADMIN = "admin"
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    FREE_SLOT = "free_slot"


class GrantType(str, Enum):
    """Persisted grant kinds (access_grants.access_type)."""
    PURCHASE = "purchase"
    FREE_SLOT = "free_slot"


class CurrentUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None


class AccessCheckResult(BaseModel):
    """Resolved entitlement for one user and one scene."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    has_access: bool = Field(..., alias="hasAccess")
    access_type: AccessType = Field(..., alias="accessType")
    can_use_free_slot: bool = Field(False, alias="canUseFreeSlot")

    @classmethod
    def granted(cls, access_type: AccessType) -> "AccessCheckResult":
        return cls(has_access=True, access_type=access_type, can_use_free_slot=False)

    @classmethod
    def denied(cls, can_use_free_slot: bool = False) -> "AccessCheckResult":
        return cls(has_access=False, access_type=AccessType.NONE, can_use_free_slot=can_use_free_slot)


class AccessGrant(BaseModel):
    """
    A purchase or free-slot grant. Exactly one of scene_id / work_id is set;
    a work-level grant unlocks every scene of the work.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    access_type: GrantType
    scene_id: Optional[str] = None
    work_id: Optional[str] = None
    purchase_id: Optional[str] = None
    created_at: Optional[datetime] = None


class FreeSlotState(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    scene_id: str
    consumed_at: Optional[datetime] = None


class ConsumeResult(BaseModel):
    """Outcome of the atomic free-slot compare-and-set."""
    model_config = ConfigDict(frozen=True)

    already_consumed: bool
    state: FreeSlotState


class FreeSlotGrantResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    already_consumed: bool = False
    scene_id: Optional[str] = None
