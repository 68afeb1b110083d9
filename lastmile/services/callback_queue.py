"""
Polling side of callback delivery.

Due rows (pending, next_attempt_at <= now) are claimed under a lease and handed to
worker.tasks.deliver_callback. A row in `sending` belongs to exactly one worker until
its outcome is written or its lease expires, which keeps attempts for one entity sequential.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.ids import new_lease_id
from lastmile.models.base import utcnow
from lastmile.models.callback import CallbackDelivery
from lastmile.models.enums import CallbackStatus
from lastmile.services.outbox_dispatcher import Enqueue


log = logging.getLogger(__name__)

CALLBACK_TASK = "worker.tasks.deliver_callback"


async def requeue_expired_callback_leases(db: AsyncSession, *, now: datetime) -> int:
    """
    A lease that expires without an outcome counts as a failed attempt.
    At the attempt ceiling the row is dead-lettered instead of requeued.
    """
    expired = (await db.execute(
        select(CallbackDelivery)
        .where(
            CallbackDelivery.status == CallbackStatus.SENDING.value,
            CallbackDelivery.lease_expires_at.is_not(None),
            CallbackDelivery.lease_expires_at < now,
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )).scalars().all()

    for cb in expired:
        cb.attempts += 1
        cb.last_attempt_at = now
        cb.last_error = "lease expired before the worker recorded an outcome"
        cb.lease_id = None
        cb.lease_expires_at = None

        if cb.attempts >= settings.callback_max_attempts:
            cb.status = CallbackStatus.DEAD_LETTERED.value
            cb.dead_lettered_at = now
            cb.next_attempt_at = None
            cb.status_detail = "LEASE_EXPIRED"
            log.error(
                "callback: permanently failed callback_id=%s source=%s:%s external_id=%s attempts=%d last_error=%s",
                cb.id, cb.source_type, cb.source_id, cb.external_id, cb.attempts, cb.last_error,
            )
            continue

        cb.status = CallbackStatus.PENDING.value
        cb.next_attempt_at = now
        cb.status_detail = "requeued: lease expired"

    if expired:
        await db.flush()
        log.warning("dispatcher: reclaimed %d callbacks with expired leases", len(expired))
    return len(expired)


async def claim_due_callbacks(
    db: AsyncSession, *, now: datetime, batch_size: int = 100, lease_seconds: int | None = None
) -> tuple[str, list[str]]:
    lease_id = new_lease_id()
    expires_at = now + timedelta(seconds=lease_seconds or settings.callback_lease_seconds)

    stmt = (
        select(CallbackDelivery.id)
        .where(
            CallbackDelivery.status == CallbackStatus.PENDING.value,
            CallbackDelivery.next_attempt_at.is_not(None),
            CallbackDelivery.next_attempt_at <= now,
        )
        .order_by(CallbackDelivery.next_attempt_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = list((await db.execute(stmt)).scalars().all())
    if not ids:
        return lease_id, []

    await db.execute(
        update(CallbackDelivery)
        .where(CallbackDelivery.id.in_(ids))
        .values(status=CallbackStatus.SENDING.value, lease_id=lease_id, lease_expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return lease_id, ids


async def dispatch_due_callbacks(
    db: AsyncSession,
    enqueue: Enqueue,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    lease_seconds: int | None = None,
) -> int:
    now = now or utcnow()
    await requeue_expired_callback_leases(db, now=now)

    lease_id, ids = await claim_due_callbacks(
        db, now=now, batch_size=batch_size or settings.dispatcher_batch_size, lease_seconds=lease_seconds
    )
    await db.commit()

    if not ids:
        return 0

    dispatched = 0
    for callback_id in ids:
        try:
            enqueue(CALLBACK_TASK, [callback_id, lease_id], "callbacks")
            dispatched += 1
        except Exception as e:
            log.warning("dispatcher: enqueue failed callback_id=%s error=%s", callback_id, e)
            await db.execute(
                update(CallbackDelivery)
                .where(CallbackDelivery.id == callback_id, CallbackDelivery.lease_id == lease_id)
                .values(
                    status=CallbackStatus.PENDING.value,
                    lease_id=None,
                    lease_expires_at=None,
                    status_detail=f"enqueue failed: {type(e).__name__}: {e}",
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    return dispatched
