"""
Webhook replay protection.

Every provider event id is recorded once in billing_events. An event that is
already processed is skipped. One that failed earlier, or whose claim is older
than CLAIM_LEASE without finishing (the worker died mid-apply), may be claimed
again so that provider retries can finish the work. Applying an event is
idempotent, so a second concurrent claim is harmless.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sceneaccess.core.database import billing_events, get_db_session
from sceneaccess.core.errors import StorageError


CLAIM_LEASE = timedelta(minutes=5)


def _utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def can_reclaim(processed: bool, error: Optional[str], claimed_at: Optional[datetime], now: datetime) -> bool:
    if processed:
        return False
    if error is not None:
        return True
    return claimed_at is None or now - _utc(claimed_at) >= CLAIM_LEASE


@dataclass
class BillingEventRecord:
    stripe_event_id: str
    event_type: str
    payload_hash: str
    processed: bool = False
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BillingEventStore(Protocol):
    async def claim_event(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        """True when the caller should apply the event."""
        ...

    async def mark_processed(self, event_id: str) -> None:
        ...

    async def mark_failed(self, event_id: str, error: str) -> None:
        ...


class InMemoryBillingEventStore:
    def __init__(self):
        self.events: Dict[str, BillingEventRecord] = {}

    async def claim_event(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        now = datetime.now(timezone.utc)
        existing = self.events.get(event_id)
        if existing is not None:
            if not can_reclaim(existing.processed, existing.error, existing.received_at, now):
                return False
            existing.error = None
            existing.received_at = now
            return True
        self.events[event_id] = BillingEventRecord(event_id, event_type, payload_hash, received_at=now)
        return True

    async def mark_processed(self, event_id: str) -> None:
        record = self.events[event_id]
        record.processed = True
        record.processed_at = datetime.now(timezone.utc)
        record.error = None

    async def mark_failed(self, event_id: str, error: str) -> None:
        self.events[event_id].error = error


class SqlBillingEventStore:
    async def claim_event(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        return await asyncio.to_thread(self._claim_event, event_id, event_type, payload_hash)

    def _claim_event(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        now = datetime.now(timezone.utc)
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(
                        billing_events.c.processed,
                        billing_events.c.error,
                        billing_events.c.received_at,
                    ).where(billing_events.c.stripe_event_id == event_id)
                ).fetchone()
                if existing:
                    if not can_reclaim(existing.processed, existing.error, existing.received_at, now):
                        return False
                    # Conditional update: only one worker wins the re-claim
                    reclaimed = session.execute(
                        update(billing_events)
                        .where(billing_events.c.stripe_event_id == event_id)
                        .where(billing_events.c.processed.is_(False))
                        .where(billing_events.c.received_at == existing.received_at)
                        .values(error=None, received_at=now)
                    )
                    return reclaimed.rowcount == 1
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        received_at=now,
                        processed=False,
                    )
                )
            return True
        except IntegrityError:
            # Race condition: another worker recorded this event first
            return False
        except SQLAlchemyError as e:
            raise StorageError("Billing event storage unavailable") from e

    async def mark_processed(self, event_id: str) -> None:
        await asyncio.to_thread(
            self._update,
            event_id,
            {"processed": True, "processed_at": datetime.now(timezone.utc), "error": None},
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        await asyncio.to_thread(self._update, event_id, {"error": error[:1000]})

    def _update(self, event_id: str, values: dict) -> None:
        try:
            with get_db_session() as session:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event_id)
                    .values(**values)
                )
        except SQLAlchemyError as e:
            raise StorageError("Billing event storage unavailable") from e
