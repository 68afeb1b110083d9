"""
Driver actions on trips and their destinations.

Every write locks the trip row first, so actions on one trip (and its request)
are applied one at a time. Input is validated before any state check.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.errors import ForbiddenError, NotFoundError, ValidationError
from lastmile.models.base import utcnow
from lastmile.models.delivery_request import Destination, DestinationItem
from lastmile.models.enums import DeliveryRequestStatus, DestinationStatus, EventType, FailureReason
from lastmile.models.outbox import OutboxEvent
from lastmile.models.trip import Trip
from lastmile.schemas.driver import CompleteDestinationIn, DeliveredItemIn
from lastmile.services import transitions
from lastmile.services.events import emit_event
from lastmile.services.storage import LocalObjectStore, decode_proof, proof_store, put_proof


log = logging.getLogger(__name__)


# ---- loading ----

async def load_trip(db: AsyncSession, *, trip_id: str, driver_id: str | None, lock: bool = False) -> Trip:
    stmt = select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    trip = (await db.execute(stmt)).scalar_one_or_none()
    if not trip:
        raise NotFoundError("Trip not found")
    if driver_id is not None and trip.driver_id != driver_id:
        raise ForbiddenError("Trip is not assigned to this driver")
    return trip


def find_destination(trip: Trip, destination_id: str) -> Destination:
    for dest in trip.delivery_request.destinations:
        if dest.id == destination_id:
            return dest
    raise NotFoundError("Destination not found for this trip")


async def list_trips(db: AsyncSession, *, driver_id: str, status: str | None = None) -> list[Trip]:
    stmt = select(Trip).where(Trip.driver_id == driver_id)
    if status:
        stmt = stmt.where(Trip.status == status)
    stmt = stmt.order_by(Trip.assigned_at.desc(), Trip.id.desc())
    return list((await db.execute(stmt)).scalars().all())


# ---- validation helpers ----

def _check_coords(lat: float | None, lng: float | None) -> None:
    details = []
    if lat is not None and not -90 <= lat <= 90:
        details.append({"field": "lat", "message": "must be between -90 and 90"})
    if lng is not None and not -180 <= lng <= 180:
        details.append({"field": "lng", "message": "must be between -180 and 180"})
    if details:
        raise ValidationError("Invalid coordinates", details=details)


def _check_total_km(total_km: float | None) -> float:
    if total_km is None:
        raise ValidationError.missing_fields(["total_km"])
    if total_km < 0 or total_km > settings.max_trip_km:
        raise ValidationError.for_field("total_km", f"must be between 0 and {settings.max_trip_km:g}")
    return float(total_km)


def _check_failure_reason(reason: str | None) -> FailureReason:
    if not reason:
        raise ValidationError.missing_fields(["reason"])
    try:
        return FailureReason(reason)
    except ValueError:
        allowed = ", ".join(r.value for r in FailureReason)
        raise ValidationError.for_field("reason", f"must be one of: {allowed}")


def _open_trip_destination(trip: Trip, destination_id: str) -> Destination:
    dest = find_destination(trip, destination_id)
    transitions.ensure_trip_open(trip)
    transitions.ensure_request_open(trip.delivery_request)
    return dest


# ---- events ----

def _emit_destination_event(db: AsyncSession, trip: Trip, dest: Destination, event_type: EventType) -> OutboxEvent:
    return emit_event(
        db,
        aggregate_type="destination",
        aggregate_id=dest.id,
        event_type=event_type,
        payload={
            "tenant_id": dest.tenant_id,
            "delivery_request_id": dest.delivery_request_id,
            "destination_id": dest.id,
            "trip_id": trip.id,
            "external_id": dest.external_id,
            "status": dest.status,
            "completed_at": dest.completed_at.isoformat() if dest.completed_at else None,
        },
    )


def _after_terminal(db: AsyncSession, trip: Trip, dest: Destination, event_type: EventType, now: datetime) -> None:
    _emit_destination_event(db, trip, dest, event_type)
    dr = trip.delivery_request
    if transitions.rollup_request_status(dr, now=now):
        log.info("driver: delivery request completed id=%s", dr.id)


# ---- trip actions ----

async def start_trip(
    db: AsyncSession, *, driver_id: str, trip_id: str,
    lat: float | None = None, lng: float | None = None, now: datetime | None = None,
) -> Trip:
    _check_coords(lat, lng)
    now = now or utcnow()

    trip = await load_trip(db, trip_id=trip_id, driver_id=driver_id, lock=True)
    dr = trip.delivery_request
    transitions.ensure_request_open(dr)
    transitions.start_trip(trip, now=now, lat=lat, lng=lng)
    transitions.advance_request(dr, DeliveryRequestStatus.IN_PROGRESS)
    trip.updated_by = driver_id
    dr.updated_by = driver_id

    log.info("driver: trip started trip_id=%s driver_id=%s", trip.id, driver_id)
    return trip


async def complete_trip(
    db: AsyncSession, *, driver_id: str, trip_id: str, total_km: float | None,
    lat: float | None = None, lng: float | None = None, now: datetime | None = None,
) -> Trip:
    km = _check_total_km(total_km)
    _check_coords(lat, lng)
    now = now or utcnow()

    trip = await load_trip(db, trip_id=trip_id, driver_id=driver_id, lock=True)
    dr = trip.delivery_request
    transitions.complete_trip(trip, dr, now=now, total_km=km, lat=lat, lng=lng)
    trip.updated_by = driver_id

    dr.actual_km = km
    if trip.vehicle is not None:
        trip.vehicle.add_kilometers(km)
    transitions.rollup_request_status(dr, now=now)

    emit_event(
        db,
        aggregate_type="trip",
        aggregate_id=trip.id,
        event_type=EventType.TRIP_COMPLETED,
        payload={
            "tenant_id": dr.tenant_id,
            "trip_id": trip.id,
            "delivery_request_id": dr.id,
            "driver_id": trip.driver_id,
            "vehicle_id": trip.vehicle_id,
            "actual_km": km,
        },
    )
    log.info("driver: trip completed trip_id=%s actual_km=%s", trip.id, km)
    return trip


# ---- destination actions ----

async def arrive(
    db: AsyncSession, *, driver_id: str, trip_id: str, destination_id: str,
    lat: float | None = None, lng: float | None = None, now: datetime | None = None,
) -> Destination:
    _check_coords(lat, lng)
    now = now or utcnow()

    trip = await load_trip(db, trip_id=trip_id, driver_id=driver_id, lock=True)
    dest = _open_trip_destination(trip, destination_id)
    if transitions.mark_arrived(dest, now=now, lat=lat, lng=lng):
        dest.updated_by = driver_id
    return dest


def _apply_items(dest: Destination, items: list[DeliveredItemIn]) -> None:
    existing = {i.order_item_id: i for i in dest.items}
    for item in items:
        reason = item.reason.value if item.reason else None
        row = existing.get(item.order_item_id)
        if row is not None:
            # quantity_ordered comes from the tenant and is kept
            row.quantity_delivered = item.quantity_delivered
            row.delivery_reason = reason
            row.notes = item.notes
            continue
        row = DestinationItem(
            order_item_id=item.order_item_id,
            quantity_ordered=item.quantity_ordered if item.quantity_ordered is not None else item.quantity_delivered,
            quantity_delivered=item.quantity_delivered,
            delivery_reason=reason,
            notes=item.notes,
        )
        dest.items.append(row)
        existing[row.order_item_id] = row


async def complete_destination(
    db: AsyncSession, *, driver_id: str, trip_id: str, destination_id: str,
    data: CompleteDestinationIn, store: LocalObjectStore | None = None, now: datetime | None = None,
) -> Destination:
    proofs = {
        kind: decode_proof(kind, encoded)
        for kind, encoded in (("signature", data.signature), ("photo", data.photo))
        if encoded
    }
    now = now or utcnow()

    trip = await load_trip(db, trip_id=trip_id, driver_id=driver_id, lock=True)
    dest = _open_trip_destination(trip, destination_id)
    transitions.check_destination(dest, DestinationStatus.COMPLETED)

    if data.items:
        _apply_items(dest, data.items)

    if proofs:
        store = store or proof_store()
        for kind, raw in proofs.items():
            ref = put_proof(store, destination_id=dest.id, kind=kind, data=raw)
            setattr(dest, f"{kind}_ref", ref)

    transitions.mark_completed(dest, now=now, recipient_name=data.recipient_name, notes=data.notes)
    dest.updated_by = driver_id
    _after_terminal(db, trip, dest, EventType.DESTINATION_COMPLETED, now)

    log.info("driver: destination completed destination_id=%s external_id=%s", dest.id, dest.external_id)
    return dest


async def fail_destination(
    db: AsyncSession, *, driver_id: str, trip_id: str, destination_id: str,
    reason: str | None, notes: str | None = None, now: datetime | None = None,
) -> Destination:
    failure_reason = _check_failure_reason(reason)
    now = now or utcnow()

    trip = await load_trip(db, trip_id=trip_id, driver_id=driver_id, lock=True)
    dest = _open_trip_destination(trip, destination_id)
    transitions.mark_failed(dest, now=now, reason=failure_reason.value, notes=notes)
    dest.updated_by = driver_id
    _after_terminal(db, trip, dest, EventType.DESTINATION_FAILED, now)

    log.info("driver: destination failed destination_id=%s reason=%s", dest.id, failure_reason.value)
    return dest
