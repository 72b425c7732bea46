"""
sceneaccess/models/billing.py

Billing snapshots mirrored from Stripe.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict


ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    stripe_subscription_id: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def is_active(self, now: datetime) -> bool:
        if self.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return False
        period_end = as_utc(self.current_period_end)
        return period_end is None or period_end > as_utc(now)
