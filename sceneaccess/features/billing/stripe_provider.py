"""
Stripe implementation of the billing provider.

Verifies webhook signatures and normalizes the events this service acts on:
- checkout.session.completed (one-off purchase of a scene or a work)
- customer.subscription.* (subscription snapshot)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from sceneaccess.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)


logger = logging.getLogger(__name__)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]):
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            # Normalize from the verified body itself
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        event_type = event["type"]
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})
        result = BillingWebhookResult(event_id=event["id"], event_type=event_type, metadata=metadata)

        if result.is_checkout_completed:
            result.checkout_session_id = data.get("id")
            result.user_id = metadata.get("user_id") or data.get("client_reference_id")
        elif result.is_subscription_event:
            result.subscription_id = data.get("id")
            result.status = data.get("status")
            result.cancel_at_period_end = bool(data.get("cancel_at_period_end", False))
            period_end_ts = self._period_end(data)
            if period_end_ts:
                result.current_period_end = datetime.fromtimestamp(int(period_end_ts), tz=timezone.utc)
            result.user_id = metadata.get("user_id") or self._customer_user_id(data.get("customer"))

        return result

    @staticmethod
    def _period_end(data: Dict[str, Any]) -> Optional[int]:
        """Top-level current_period_end, or the first item's (newer API versions)."""
        if data.get("current_period_end"):
            return data["current_period_end"]
        items = (data.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
        return ends[0] if ends else None

    def _customer_user_id(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            logger.warning(f"Could not load Stripe customer {customer_id}: {e}")
            return None
        return (customer.get("metadata") or {}).get("user_id")
