"""
Billing provider protocol.

Only the inbound half of the provider relationship lives here: verifying and
normalizing webhook events. Checkout creation happens elsewhere.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_EVENT_PREFIX = "customer.subscription."


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    status: Optional[str] = None  # active, trialing, canceled, past_due, etc.
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_checkout_completed(self) -> bool:
        return self.event_type == CHECKOUT_COMPLETED

    @property
    def is_subscription_event(self) -> bool:
        return self.event_type.startswith(SUBSCRIPTION_EVENT_PREFIX)


class BillingProvider(Protocol):
    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification errors."""
    pass
