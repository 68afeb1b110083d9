from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.ids import new_lease_id
from lastmile.models.base import utcnow
from lastmile.models.outbox import OutboxEvent

# (task_name, args, queue); worker/dispatcher.py passes celery.send_task
Enqueue = Callable[[str, list, str], None]

OUTBOX_TASK = "worker.tasks.process_outbox_event"


async def requeue_expired_leases(db: AsyncSession, *, now: datetime) -> int:
    result = await db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.status == "processing",
            OutboxEvent.lease_expires_at.is_not(None),
            OutboxEvent.lease_expires_at < now,
        )
        .values(
            status="pending",
            lease_id=None,
            lease_expires_at=None,
            processing_started_at=None,
            last_error="requeued: lease expired",
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def claim_outbox_event_ids(
    db: AsyncSession, *, now: datetime, batch_size: int = 100, lease_seconds: int | None = None
) -> tuple[str, list[str]]:
    lease_id = new_lease_id()
    expires_at = now + timedelta(seconds=lease_seconds or settings.callback_lease_seconds)

    # Lock and select pending rows
    stmt = (
        select(OutboxEvent.id)
        .where(OutboxEvent.status == "pending")
        .order_by(OutboxEvent.created_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = list((await db.execute(stmt)).scalars().all())
    if not ids:
        return lease_id, []

    await db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id.in_(ids))
        .values(
            status="processing",
            processing_started_at=now,
            attempts=OutboxEvent.attempts + 1,
            last_error=None,
            lease_id=lease_id,
            lease_expires_at=expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return lease_id, ids


async def dispatch_outbox(
    db: AsyncSession,
    enqueue: Enqueue,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    lease_seconds: int | None = None,
) -> int:
    now = now or utcnow()
    await requeue_expired_leases(db, now=now)

    lease_id, ids = await claim_outbox_event_ids(
        db, now=now, batch_size=batch_size or settings.dispatcher_batch_size, lease_seconds=lease_seconds
    )

    # Commit before enqueue so workers can read status/rows
    await db.commit()

    if not ids:
        return 0

    failed: list[tuple[str, str]] = []
    dispatched = 0

    for outbox_id in ids:
        try:
            enqueue(OUTBOX_TASK, [outbox_id, lease_id], "outbox")
            dispatched += 1
        except Exception as e:
            failed.append((outbox_id, f"{type(e).__name__}: {e}"))

    # if enqueue fails, return those items to pending
    if failed:
        for outbox_id, msg in failed:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
                .values(
                    status="pending",
                    lease_id=None,
                    lease_expires_at=None,
                    processing_started_at=None,
                    last_error=f"enqueue failed: {msg}",
                )
                .execution_options(synchronize_session=False)
            )
        await db.commit()

    return dispatched
