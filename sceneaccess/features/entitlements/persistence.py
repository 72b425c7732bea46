"""
SQL-backed stores (SQLAlchemy Core).

Blocking database work runs in a worker thread via asyncio.to_thread. Read
failures come back as Lookup failures; write failures raise StorageError with
the SQLAlchemy error chained.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sceneaccess.core.database import (
    access_grants,
    admin_flags,
    billing_subscriptions,
    free_slot_grants,
    get_db_session,
)
from sceneaccess.core.errors import StorageError
from sceneaccess.features.entitlements.stores import Lookup
from sceneaccess.models.access import AccessGrant, ConsumeResult, FreeSlotState, GrantType
from sceneaccess.models.billing import ACTIVE_SUBSCRIPTION_STATUSES, SubscriptionSnapshot, as_utc


logger = logging.getLogger("sceneaccess")


def _read_failed(table: str, error: SQLAlchemyError) -> Lookup:
    logger.error("store.read_failed", extra={"error_code": "storage_error", "reason": f"{table}: {error}"})
    return Lookup.failure(error)


def _row_to_grant(row) -> AccessGrant:
    return AccessGrant(
        id=row.id,
        user_id=row.user_id,
        access_type=GrantType(row.access_type),
        scene_id=row.scene_id,
        work_id=row.work_id,
        purchase_id=row.purchase_id,
        created_at=as_utc(row.created_at),
    )


def _row_to_free_slot(row) -> FreeSlotState:
    return FreeSlotState(user_id=row.user_id, scene_id=row.scene_id, consumed_at=as_utc(row.consumed_at))


class SqlAdminFlagStore:
    async def is_admin(self, user_id: str) -> Lookup[bool]:
        return await asyncio.to_thread(self._is_admin, user_id)

    def _is_admin(self, user_id: str) -> Lookup[bool]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(admin_flags.c.is_admin).where(admin_flags.c.user_id == user_id)
                ).first()
        except SQLAlchemyError as e:
            return _read_failed("admin_flags", e)
        return Lookup.hit(bool(row and row.is_admin))


class SqlSubscriptionStore:
    async def has_active_subscription(self, user_id: str, now: datetime) -> Lookup[bool]:
        return await asyncio.to_thread(self._has_active_subscription, user_id, now)

    def _has_active_subscription(self, user_id: str, now: datetime) -> Lookup[bool]:
        try:
            with get_db_session() as session:
                rows = session.execute(
                    select(
                        billing_subscriptions.c.stripe_subscription_id,
                        billing_subscriptions.c.status,
                        billing_subscriptions.c.current_period_end,
                    )
                    .where(billing_subscriptions.c.user_id == user_id)
                    .where(billing_subscriptions.c.status.in_(sorted(ACTIVE_SUBSCRIPTION_STATUSES)))
                ).all()
        except SQLAlchemyError as e:
            return _read_failed("billing_subscriptions", e)
        # Period end is compared in Python: SQLite drops tzinfo
        active = any(
            SubscriptionSnapshot(
                user_id=user_id,
                stripe_subscription_id=row.stripe_subscription_id,
                status=row.status,
                current_period_end=row.current_period_end,
            ).is_active(now)
            for row in rows
        )
        return Lookup.hit(active)

    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> None:
        await asyncio.to_thread(self._upsert_subscription, snapshot)

    def _upsert_subscription(self, snapshot: SubscriptionSnapshot) -> None:
        values = {
            "user_id": snapshot.user_id,
            "status": snapshot.status,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "updated_at": datetime.now(timezone.utc),
        }
        try:
            with get_db_session() as session:
                result = session.execute(
                    update(billing_subscriptions)
                    .where(billing_subscriptions.c.stripe_subscription_id == snapshot.stripe_subscription_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    session.execute(
                        insert(billing_subscriptions).values(
                            stripe_subscription_id=snapshot.stripe_subscription_id, **values
                        )
                    )
        except IntegrityError:
            # Lost an insert race for the same subscription id; apply as update
            try:
                with get_db_session() as session:
                    session.execute(
                        update(billing_subscriptions)
                        .where(billing_subscriptions.c.stripe_subscription_id == snapshot.stripe_subscription_id)
                        .values(**values)
                    )
            except SQLAlchemyError as e:
                raise StorageError("Subscription storage unavailable") from e
        except SQLAlchemyError as e:
            raise StorageError("Subscription storage unavailable") from e


class SqlGrantStore:
    async def find_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
    ) -> Lookup[AccessGrant]:
        return await asyncio.to_thread(self._find_grant, user_id, access_type, scene_id, work_id)

    def _find_grant(self, user_id, access_type, scene_id, work_id) -> Lookup[AccessGrant]:
        targets = []
        if scene_id is not None:
            targets.append(access_grants.c.scene_id == scene_id)
        if work_id is not None:
            targets.append(access_grants.c.work_id == work_id)
        if not targets:
            return Lookup.miss()
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(access_grants)
                    .where(
                        and_(
                            access_grants.c.user_id == user_id,
                            access_grants.c.access_type == GrantType(access_type).value,
                            or_(*targets),
                        )
                    )
                    .order_by(access_grants.c.id)
                    .limit(1)
                ).first()
        except SQLAlchemyError as e:
            return _read_failed("access_grants", e)
        return Lookup.of(_row_to_grant(row) if row else None)

    async def create_grant(
        self,
        user_id: str,
        access_type: GrantType,
        scene_id: Optional[str] = None,
        work_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> AccessGrant:
        return await asyncio.to_thread(self._create_grant, user_id, access_type, scene_id, work_id, purchase_id)

    def _create_grant(self, user_id, access_type, scene_id, work_id, purchase_id) -> AccessGrant:
        if (scene_id is None) == (work_id is None):
            raise ValueError("Exactly one of scene_id or work_id must be set")
        try:
            with get_db_session() as session:
                result = session.execute(
                    insert(access_grants).values(
                        user_id=user_id,
                        access_type=GrantType(access_type).value,
                        scene_id=scene_id,
                        work_id=work_id,
                        purchase_id=purchase_id,
                        created_at=datetime.now(timezone.utc),
                    )
                )
                grant_id = result.inserted_primary_key[0]
                row = session.execute(select(access_grants).where(access_grants.c.id == grant_id)).first()
                return _row_to_grant(row)
        except IntegrityError as e:
            if purchase_id is None:
                raise StorageError("Grant storage rejected the write") from e
            existing = self._grant_by_purchase_id(purchase_id)
            if existing is None:
                raise StorageError("Grant storage rejected the write") from e
            return existing
        except SQLAlchemyError as e:
            raise StorageError("Grant storage unavailable") from e

    def _grant_by_purchase_id(self, purchase_id: str) -> Optional[AccessGrant]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(access_grants).where(access_grants.c.purchase_id == purchase_id)
                ).first()
        except SQLAlchemyError as e:
            raise StorageError("Grant storage unavailable") from e
        return _row_to_grant(row) if row else None


class SqlFreeSlotStore:
    """
    Free-slot state keyed by user_id (primary key).

    The free_slot_grants row and its access_grants row are written in one
    transaction; a primary-key conflict means the slot is already taken.
    """

    async def get_state(self, user_id: str) -> Lookup[FreeSlotState]:
        return await asyncio.to_thread(self._get_state, user_id)

    def _get_state(self, user_id: str) -> Lookup[FreeSlotState]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(free_slot_grants).where(free_slot_grants.c.user_id == user_id)
                ).first()
        except SQLAlchemyError as e:
            return _read_failed("free_slot_grants", e)
        return Lookup.of(_row_to_free_slot(row) if row else None)

    async def consume_if_unused(self, user_id: str, scene_id: str) -> ConsumeResult:
        return await asyncio.to_thread(self._consume_if_unused, user_id, scene_id)

    def _consume_if_unused(self, user_id: str, scene_id: str) -> ConsumeResult:
        now = datetime.now(timezone.utc)
        try:
            with get_db_session() as session:
                session.execute(
                    insert(free_slot_grants).values(user_id=user_id, scene_id=scene_id, consumed_at=now)
                )
                session.execute(
                    insert(access_grants).values(
                        user_id=user_id,
                        access_type=GrantType.FREE_SLOT.value,
                        scene_id=scene_id,
                        created_at=now,
                    )
                )
        except IntegrityError as e:
            existing = self._get_state(user_id)
            if existing.failed or not existing.found:
                raise StorageError("Free slot storage unavailable") from e
            return ConsumeResult(already_consumed=True, state=existing.value)
        except SQLAlchemyError as e:
            raise StorageError("Free slot storage unavailable") from e
        return ConsumeResult(
            already_consumed=False,
            state=FreeSlotState(user_id=user_id, scene_id=scene_id, consumed_at=now),
        )
