"""
Billing webhook processing.

Verifies replay protection, purchase grants from checkout metadata and
subscription snapshots.
"""
import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import select, update

from sceneaccess.core.database import billing_events, get_db_session
from sceneaccess.core.errors import BillingDisabledError, StorageError, ValidationError
from sceneaccess.features.billing.events import CLAIM_LEASE, InMemoryBillingEventStore, SqlBillingEventStore
from sceneaccess.features.billing.provider import BillingWebhookError, BillingWebhookResult
from sceneaccess.features.billing.service import BillingService, purchase_target
from sceneaccess.features.billing.stripe_provider import StripeProvider
from sceneaccess.features.entitlements.memory import InMemoryGrantStore, InMemorySubscriptionStore
from sceneaccess.features.entitlements.persistence import SqlGrantStore, SqlSubscriptionStore
from sceneaccess.models.access import GrantType


HEADERS = {"stripe-signature": "sig123"}
WEBHOOK_SECRET = "whsec_test123"


def _checkout(event_id="evt_1", session_id="cs_1", **metadata):
    meta = {"user_id": "alice"}
    meta.update(metadata)
    return BillingWebhookResult(
        event_id=event_id,
        event_type="checkout.session.completed",
        user_id=meta.get("user_id"),
        checkout_session_id=session_id,
        metadata=meta,
    )


def _subscription(event_id="evt_sub", status="active", period_end=None):
    return BillingWebhookResult(
        event_id=event_id,
        event_type="customer.subscription.updated",
        user_id="alice",
        subscription_id="sub_1",
        status=status,
        current_period_end=period_end or datetime.now(timezone.utc) + timedelta(days=30),
    )


@pytest.fixture
def provider():
    return Mock()


@pytest.fixture
def memory_service(provider):
    return BillingService(provider, InMemoryBillingEventStore(), InMemoryGrantStore(), InMemorySubscriptionStore())


def _process(service, body=b'{"id": "evt_1"}'):
    return asyncio.run(service.process_webhook_event(HEADERS, body))


def test_checkout_records_scene_purchase(memory_service, provider):
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")

    outcome = _process(memory_service)

    assert outcome.duplicate is False
    grants = memory_service.grants.grants
    assert len(grants) == 1
    assert grants[0].access_type == GrantType.PURCHASE
    assert grants[0].scene_id == "scene_1"
    assert grants[0].work_id is None
    assert grants[0].purchase_id == "cs_1"


def test_checkout_with_blank_scene_records_work_purchase(memory_service, provider):
    provider.handle_webhook.return_value = _checkout(work_id="work_1", scene_id="  ")

    _process(memory_service)

    [grant] = memory_service.grants.grants
    assert grant.work_id == "work_1"
    assert grant.scene_id is None


def test_duplicate_event_is_skipped(memory_service, provider):
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")

    first = _process(memory_service)
    second = _process(memory_service)

    assert first.duplicate is False
    assert second.duplicate is True
    assert len(memory_service.grants.grants) == 1


def test_same_checkout_in_new_event_does_not_duplicate_grant(memory_service, provider):
    provider.handle_webhook.return_value = _checkout(event_id="evt_a", scene_id="scene_1")
    _process(memory_service)
    provider.handle_webhook.return_value = _checkout(event_id="evt_b", scene_id="scene_1")
    _process(memory_service)

    assert len(memory_service.grants.grants) == 1


@pytest.mark.parametrize(
    "metadata,message",
    [
        ({"user_id": "", "scene_id": "scene_1"}, "No user_id in checkout metadata"),
        ({}, "work_id or scene_id required"),
        ({"scene_id": " ", "work_id": ""}, "work_id or scene_id required"),
        ({"scene_id": "scene_1", "work_id": "work_1"}, "Cannot have both work_id and scene_id"),
    ],
)
def test_bad_checkout_metadata_rejected_before_recording(memory_service, provider, metadata, message):
    provider.handle_webhook.return_value = _checkout(**metadata)

    with pytest.raises(ValidationError) as exc_info:
        _process(memory_service)

    assert exc_info.value.message == message
    assert memory_service.events.events == {}
    assert memory_service.grants.grants == []


def test_purchase_target_requires_session_id():
    with pytest.raises(ValidationError):
        purchase_target(_checkout(session_id=None, scene_id="scene_1"))


def test_invalid_signature_maps_to_validation_error(memory_service, provider):
    provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature: nope")

    with pytest.raises(ValidationError) as exc_info:
        _process(memory_service)

    assert exc_info.value.status_code == 400


def test_billing_disabled_without_provider():
    service = BillingService(None, InMemoryBillingEventStore(), InMemoryGrantStore(), InMemorySubscriptionStore())

    with pytest.raises(BillingDisabledError) as exc_info:
        asyncio.run(service.process_webhook_event(HEADERS, b"{}"))

    assert exc_info.value.status_code == 503
    assert service.enabled is False


def test_subscription_event_upserts_snapshot(memory_service, provider):
    provider.handle_webhook.return_value = _subscription()
    _process(memory_service)

    now = datetime.now(timezone.utc)
    assert asyncio.run(memory_service.subscriptions.has_active_subscription("alice", now)).value is True

    provider.handle_webhook.return_value = _subscription(event_id="evt_sub_2", status="canceled")
    _process(memory_service)
    assert asyncio.run(memory_service.subscriptions.has_active_subscription("alice", now)).value is False


def test_unrelated_events_are_acknowledged(memory_service, provider):
    provider.handle_webhook.return_value = BillingWebhookResult(event_id="evt_x", event_type="invoice.paid")

    outcome = _process(memory_service)

    assert outcome.duplicate is False
    assert memory_service.events.events["evt_x"].processed is True


class FlakyGrants(InMemoryGrantStore):
    def __init__(self):
        super().__init__()
        self.fail = True

    async def create_grant(self, *args, **kwargs):
        if self.fail:
            raise StorageError("Grant storage unavailable")
        return await super().create_grant(*args, **kwargs)


def test_failed_event_is_retried(provider):
    grants = FlakyGrants()
    service = BillingService(provider, InMemoryBillingEventStore(), grants, InMemorySubscriptionStore())
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")

    with pytest.raises(StorageError):
        _process(service)
    assert service.events.events["evt_1"].error

    grants.fail = False
    outcome = _process(service)

    assert outcome.duplicate is False
    assert service.events.events["evt_1"].processed is True
    assert len(grants.grants) == 1


class InterruptedGrants(InMemoryGrantStore):
    """Fails the first create_grant with the given exception."""

    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    async def create_grant(self, *args, **kwargs):
        if self.exc is not None:
            exc, self.exc = self.exc, None
            raise exc
        return await super().create_grant(*args, **kwargs)


@pytest.mark.parametrize("exc", [asyncio.CancelledError(), RuntimeError("boom")])
def test_interrupted_apply_is_retried(provider, exc):
    grants = InterruptedGrants(exc)
    service = BillingService(provider, InMemoryBillingEventStore(), grants, InMemorySubscriptionStore())
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")

    with pytest.raises(type(exc)):
        _process(service)
    assert service.events.events["evt_1"].processed is False
    assert service.events.events["evt_1"].error

    outcome = _process(service)

    assert outcome.duplicate is False
    assert [g.scene_id for g in grants.grants] == ["scene_1"]


def test_unfinished_claim_is_reclaimed_after_lease(memory_service, provider):
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")
    asyncio.run(memory_service.events.claim_event("evt_1", "checkout.session.completed", "hash"))

    assert _process(memory_service).duplicate is True

    record = memory_service.events.events["evt_1"]
    record.received_at -= CLAIM_LEASE + timedelta(seconds=1)
    outcome = _process(memory_service)

    assert outcome.duplicate is False
    assert record.processed is True


def test_sql_unfinished_claim_is_reclaimed_after_lease(sqlite_db, provider):
    service = BillingService(provider, SqlBillingEventStore(), SqlGrantStore(), SqlSubscriptionStore())
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")
    asyncio.run(service.events.claim_event("evt_1", "checkout.session.completed", "hash"))

    assert _process(service).duplicate is True

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == "evt_1")
            .values(received_at=datetime.now(timezone.utc) - CLAIM_LEASE - timedelta(seconds=1))
        )
    outcome = _process(service)

    assert outcome.duplicate is False
    with get_db_session() as session:
        row = session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == "evt_1")
        ).fetchone()
    assert row.processed is True


def test_sql_event_store_records_hash_and_processed(sqlite_db, provider):
    service = BillingService(provider, SqlBillingEventStore(), SqlGrantStore(), SqlSubscriptionStore())
    provider.handle_webhook.return_value = _checkout(scene_id="scene_1")
    body = b'{"id": "evt_1", "type": "checkout.session.completed"}'

    _process(service, body)
    again = _process(service, body)

    assert again.duplicate is True
    with get_db_session() as session:
        rows = session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == "evt_1")
        ).fetchall()
    assert len(rows) == 1
    assert rows[0].payload_hash == hashlib.sha256(body).hexdigest()
    assert rows[0].processed is True
    assert rows[0].processed_at is not None


def _stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _stripe_event(event_type, obj):
    return json.dumps(
        {"id": "evt_live_1", "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


def test_stripe_provider_parses_signed_checkout():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    body = _stripe_event(
        "checkout.session.completed",
        {"id": "cs_live_1", "object": "checkout.session", "metadata": {"user_id": "alice", "work_id": "work_1", "scene_id": ""}},
    )

    result = provider.handle_webhook({"stripe-signature": _stripe_signature(body)}, body)

    assert result.event_id == "evt_live_1"
    assert result.is_checkout_completed
    assert result.checkout_session_id == "cs_live_1"
    assert result.user_id == "alice"
    assert purchase_target(result).work_id == "work_1"


def test_stripe_provider_parses_subscription_with_metadata_user():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    body = _stripe_event(
        "customer.subscription.updated",
        {
            "id": "sub_9",
            "object": "subscription",
            "status": "trialing",
            "current_period_end": 1893456000,
            "cancel_at_period_end": True,
            "metadata": {"user_id": "alice"},
        },
    )

    result = provider.handle_webhook({"stripe-signature": _stripe_signature(body)}, body)

    assert result.is_subscription_event
    assert result.subscription_id == "sub_9"
    assert result.status == "trialing"
    assert result.cancel_at_period_end is True
    assert result.current_period_end == datetime.fromtimestamp(1893456000, tz=timezone.utc)


def test_stripe_provider_reads_period_end_from_subscription_items():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    body = _stripe_event(
        "customer.subscription.created",
        {
            "id": "sub_10",
            "object": "subscription",
            "status": "active",
            "metadata": {"user_id": "alice"},
            "items": {"object": "list", "data": [{"id": "si_1", "current_period_end": 1893456000}]},
        },
    )

    result = provider.handle_webhook({"stripe-signature": _stripe_signature(body)}, body)

    assert result.current_period_end == datetime.fromtimestamp(1893456000, tz=timezone.utc)


def test_stripe_provider_rejects_bad_signature():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    body = _stripe_event("checkout.session.completed", {"id": "cs_1"})

    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({"stripe-signature": _stripe_signature(body, "whsec_other")}, body)


def test_stripe_provider_requires_signature_header():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)

    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, b"{}")
