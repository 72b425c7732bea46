"""
sceneaccess/features/free_slot/service.py

One-time free-slot grant.

- Users who already have access through admin, subscription or purchase keep
  their slot; the call reports success without consuming it.
- Otherwise the store binds the slot to the scene atomically. A slot that is
  already bound (earlier call, or a concurrent one) is reported as success and
  keeps its original scene.
"""

import logging

from sceneaccess.core.errors import EntitlementResolutionError, FreeSlotGrantError, StorageError
from sceneaccess.core.metrics import free_slot_grants_total
from sceneaccess.features.entitlements.service import EntitlementResolver
from sceneaccess.features.entitlements.stores import FreeSlotStore
from sceneaccess.models.access import AccessType, FreeSlotGrantResult


logger = logging.getLogger(__name__)


class FreeSlotGranter:
    def __init__(self, resolver: EntitlementResolver, free_slots: FreeSlotStore):
        self.resolver = resolver
        self.free_slots = free_slots

    async def grant(self, user_id: str, scene_id: str) -> FreeSlotGrantResult:
        try:
            current = await self.resolver.resolve(user_id, scene_id)
        except EntitlementResolutionError as e:
            raise FreeSlotGrantError("Could not grant free slot") from e.__cause__

        if current.has_access:
            outcome = "already_free_slot" if current.access_type == AccessType.FREE_SLOT else "not_needed"
            free_slot_grants_total.inc(outcome=outcome)
            logger.info(
                "free_slot.not_needed",
                extra={"user_id": user_id, "scene_id": scene_id, "access_type": current.access_type.value},
            )
            return FreeSlotGrantResult(success=True, already_consumed=current.access_type == AccessType.FREE_SLOT, scene_id=scene_id)

        try:
            result = await self.free_slots.consume_if_unused(user_id, scene_id)
        except StorageError as e:
            logger.error(
                "free_slot.grant_failed",
                extra={"user_id": user_id, "scene_id": scene_id, "error_code": "grant_failed"},
            )
            raise FreeSlotGrantError("Could not grant free slot") from e

        if result.already_consumed:
            free_slot_grants_total.inc(outcome="already_consumed")
            logger.info(
                "free_slot.already_consumed",
                extra={"user_id": user_id, "scene_id": result.state.scene_id},
            )
        else:
            free_slot_grants_total.inc(outcome="granted")
            logger.info("free_slot.granted", extra={"user_id": user_id, "scene_id": scene_id})

        return FreeSlotGrantResult(
            success=True,
            already_consumed=result.already_consumed,
            scene_id=result.state.scene_id,
        )
