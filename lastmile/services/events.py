"""
Domain events.

emit_event() writes an outbox row inside the caller's transaction.
process_outbox_event() is what the outbox worker runs for one claimed row:
destination events become callback deliveries, trip.completed goes to reconciliation.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.models.base import utcnow
from lastmile.models.callback import CallbackDelivery
from lastmile.models.enums import CallbackStatus, EventType
from lastmile.models.outbox import OutboxEvent


log = logging.getLogger(__name__)

CALLBACK_EVENTS = {EventType.DESTINATION_COMPLETED.value, EventType.DESTINATION_FAILED.value}


def emit_event(
    db: AsyncSession,
    *,
    aggregate_type: str,
    aggregate_id: str,
    event_type: EventType,
    payload: dict[str, Any],
) -> OutboxEvent:
    ev = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=event_type.value,
        payload=payload,
        status="pending",
    )
    db.add(ev)
    return ev


async def ensure_callback_delivery(
    db: AsyncSession, ev: OutboxEvent, *, now: datetime
) -> tuple[CallbackDelivery, bool]:
    """One delivery per (source_type, source_id, event_type). Returns (row, created)."""
    existing = (await db.execute(
        select(CallbackDelivery).where(
            CallbackDelivery.source_type == ev.aggregate_type,
            CallbackDelivery.source_id == ev.aggregate_id,
            CallbackDelivery.event_type == ev.event_type,
        )
    )).scalar_one_or_none()
    if existing:
        return existing, False

    cb = CallbackDelivery(
        tenant_id=ev.payload["tenant_id"],
        source_type=ev.aggregate_type,
        source_id=ev.aggregate_id,
        event_type=ev.event_type,
        external_id=ev.payload.get("external_id"),
        status=CallbackStatus.PENDING.value,
        attempts=0,
        next_attempt_at=now,
    )
    db.add(cb)
    await db.flush()
    return cb, True


def request_reconciliation(payload: dict[str, Any]) -> None:
    # Reconciliation (ledger, cash, returns) runs outside this service.
    log.info(
        "outbox: trip completed, reconciliation requested trip_id=%s delivery_request_id=%s actual_km=%s",
        payload.get("trip_id"),
        payload.get("delivery_request_id"),
        payload.get("actual_km"),
    )


async def handle_event(db: AsyncSession, ev: OutboxEvent, *, now: datetime) -> None:
    if ev.event_type in CALLBACK_EVENTS:
        cb, created = await ensure_callback_delivery(db, ev, now=now)
        if created:
            log.info("outbox: callback queued callback_id=%s source=%s:%s", cb.id, cb.source_type, cb.source_id)
        return

    if ev.event_type == EventType.TRIP_COMPLETED.value:
        request_reconciliation(ev.payload)
        return

    log.warning("outbox: no handler for event_type=%s outbox_id=%s", ev.event_type, ev.id)


async def process_outbox_event(
    db: AsyncSession, outbox_id: str, lease_id: str, *, now: datetime | None = None
) -> bool:
    """
    Handle one claimed outbox row. Only the lease holder may mark it done.
    Returns True when the row was processed.
    """
    now = now or utcnow()
    ev = (await db.execute(
        select(OutboxEvent).where(OutboxEvent.id == outbox_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not ev:
        return False

    if ev.lease_id != lease_id or ev.status != "processing":
        # reclaimed by another dispatcher or already done
        log.info("outbox: lease lost outbox_id=%s", outbox_id)
        return False

    try:
        await handle_event(db, ev, now=now)

        result = await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
            .values(status="done", processed_at=now, lease_id=None, lease_expires_at=None)
        )
        if result.rowcount == 0:
            await db.rollback()
            return False

        await db.commit()
        return True

    except Exception as e:
        log.exception("outbox: processing failed outbox_id=%s", outbox_id)
        await db.rollback()
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
            .values(
                status="pending",
                lease_id=None,
                lease_expires_at=None,
                processing_started_at=None,
                last_error=f"{type(e).__name__}: {e}",
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return False
