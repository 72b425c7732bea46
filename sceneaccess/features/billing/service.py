"""
Billing webhook processing.

Coordinates:
- Signature verification (provider)
- Replay protection (billing_events)
- Purchase grants from completed checkouts
- Subscription snapshots from customer.subscription.* events

All Stripe-specific code is in stripe_provider.py.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sceneaccess.core.errors import BillingDisabledError, StorageError, ValidationError
from sceneaccess.features.billing.events import BillingEventStore
from sceneaccess.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from sceneaccess.features.billing.stripe_provider import StripeProvider
from sceneaccess.features.entitlements.stores import GrantStore, SubscriptionStore
from sceneaccess.models.access import GrantType
from sceneaccess.models.billing import SubscriptionSnapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseTarget:
    user_id: str
    purchase_id: str
    scene_id: Optional[str] = None
    work_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False


def _clean(value) -> Optional[str]:
    """Metadata values may be missing, None or blank strings."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def purchase_target(result: BillingWebhookResult) -> PurchaseTarget:
    """
    Extract what a completed checkout bought.

    Raises ValidationError unless the metadata names a user and exactly one of
    work_id / scene_id.
    """
    user_id = _clean(result.user_id)
    if not user_id:
        raise ValidationError("No user_id in checkout metadata")
    purchase_id = _clean(result.checkout_session_id)
    if not purchase_id:
        raise ValidationError("No checkout session id")

    work_id = _clean(result.metadata.get("work_id"))
    scene_id = _clean(result.metadata.get("scene_id"))
    if not work_id and not scene_id:
        raise ValidationError("work_id or scene_id required")
    if work_id and scene_id:
        raise ValidationError("Cannot have both work_id and scene_id")

    return PurchaseTarget(user_id=user_id, purchase_id=purchase_id, scene_id=scene_id, work_id=work_id)


def build_provider(cfg) -> Optional[BillingProvider]:
    """Stripe provider when billing is configured, else None."""
    if not getattr(cfg, "STRIPE_SECRET_KEY", None):
        return None
    try:
        return StripeProvider(cfg.STRIPE_SECRET_KEY, cfg.STRIPE_WEBHOOK_SECRET)
    except BillingProviderError as e:
        logger.warning(f"Billing disabled: {e}")
        return None


class BillingService:
    def __init__(
        self,
        provider: Optional[BillingProvider],
        events: BillingEventStore,
        grants: GrantStore,
        subscriptions: SubscriptionStore,
    ):
        self.provider = provider
        self.events = events
        self.grants = grants
        self.subscriptions = subscriptions

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def process_webhook_event(self, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        """
        Process billing webhook event (idempotent).

        1. Verify signature
        2. Validate purchase metadata
        3. Claim the event id (skip if already processed)
        4. Apply state changes
        5. Mark as processed
        """
        if self.provider is None:
            raise BillingDisabledError("Billing disabled")

        try:
            # May call the Stripe API to resolve the customer
            result = await asyncio.to_thread(self.provider.handle_webhook, headers, body)
        except BillingWebhookError as e:
            raise ValidationError(str(e)) from e

        target = purchase_target(result) if result.is_checkout_completed else None

        payload_hash = hashlib.sha256(body).hexdigest()
        claimed = await self.events.claim_event(result.event_id, result.event_type, payload_hash)
        if not claimed:
            logger.info(
                "billing.event_duplicate",
                extra={"event_type": result.event_type, "reason": result.event_id},
            )
            return WebhookOutcome(result.event_id, result.event_type, duplicate=True)

        try:
            await self._apply(result, target)
        except BaseException as e:
            # Includes cancellation
            await self._release_claim(result, e)
            raise
        await self.events.mark_processed(result.event_id)
        return WebhookOutcome(result.event_id, result.event_type)

    async def _release_claim(self, result: BillingWebhookResult, error: BaseException) -> None:
        reason = str(error.__cause__ or error) or type(error).__name__
        try:
            await self.events.mark_failed(result.event_id, reason)
        except StorageError:
            # The claim lease still lets a later delivery re-claim the event
            logger.exception(
                "billing.mark_failed_error",
                extra={"event_type": result.event_type, "reason": result.event_id},
            )
        logger.warning(
            "billing.event_failed",
            extra={"event_type": result.event_type, "reason": reason},
        )

    async def _apply(self, result: BillingWebhookResult, target: Optional[PurchaseTarget]) -> None:
        if target is not None:
            grant = await self.grants.create_grant(
                target.user_id,
                GrantType.PURCHASE,
                scene_id=target.scene_id,
                work_id=target.work_id,
                purchase_id=target.purchase_id,
            )
            logger.info(
                "billing.purchase_granted",
                extra={
                    "event_type": result.event_type,
                    "user_id": grant.user_id,
                    "scene_id": grant.scene_id,
                    "work_id": grant.work_id,
                },
            )
            return

        if result.is_subscription_event:
            if not (result.user_id and result.subscription_id and result.status):
                logger.warning(
                    "billing.subscription_unmatched",
                    extra={"event_type": result.event_type, "reason": "missing user_id, subscription id or status"},
                )
                return
            await self.subscriptions.upsert_subscription(
                SubscriptionSnapshot(
                    user_id=result.user_id,
                    stripe_subscription_id=result.subscription_id,
                    status=result.status,
                    current_period_end=result.current_period_end,
                    cancel_at_period_end=result.cancel_at_period_end,
                )
            )
            logger.info(
                "billing.subscription_updated",
                extra={"event_type": result.event_type, "user_id": result.user_id, "status": result.status},
            )
            return

        logger.info("billing.event_ignored", extra={"event_type": result.event_type})
