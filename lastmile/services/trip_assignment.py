import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.errors import InvalidStateError, NotFoundError, ValidationError
from lastmile.models.base import utcnow
from lastmile.models.delivery_request import DeliveryRequest
from lastmile.models.enums import DeliveryRequestStatus, TripStatus
from lastmile.models.fleet import Driver, Vehicle
from lastmile.models.trip import Trip
from lastmile.services import transitions


log = logging.getLogger(__name__)

ASSIGNABLE = {
    DeliveryRequestStatus.PENDING.value,
    DeliveryRequestStatus.ACCEPTED.value,
    DeliveryRequestStatus.IN_PROGRESS.value,
}


async def assign_trip(
    db: AsyncSession,
    *,
    delivery_request: DeliveryRequest,
    driver: Driver,
    vehicle: Vehicle,
    actor: str = "internal",
    now: datetime | None = None,
) -> Trip:
    now = now or utcnow()
    dr = delivery_request

    if dr.status not in ASSIGNABLE:
        raise InvalidStateError(f"Delivery request cannot be assigned - current status: {dr.status}")
    if dr.active_trip is not None:
        raise InvalidStateError("Delivery request already has an active trip")
    if not driver.is_active:
        raise ValidationError.for_field("driver_id", "driver is inactive")
    if not vehicle.is_active:
        raise ValidationError.for_field("vehicle_id", "vehicle is inactive")

    trip = Trip(
        driver_id=driver.id,
        vehicle_id=vehicle.id,
        status=TripStatus.NOT_STARTED.value,
        planned_km=dr.total_km,
        assigned_at=now,
        created_by=actor,
        updated_by=actor,
    )
    trip.vehicle = vehicle
    dr.trips.append(trip)
    transitions.advance_request(dr, DeliveryRequestStatus.ACCEPTED)
    dr.updated_by = actor
    await db.flush()

    log.info("trip_assignment: assigned trip_id=%s delivery_request_id=%s driver_id=%s", trip.id, dr.id, driver.id)
    return trip


async def assign_trip_by_ids(
    db: AsyncSession,
    *,
    delivery_request_id: str,
    driver_id: str,
    vehicle_id: str | None = None,
    actor: str = "internal",
    now: datetime | None = None,
) -> Trip:
    dr = (await db.execute(
        select(DeliveryRequest)
        .where(DeliveryRequest.id == delivery_request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not dr:
        raise NotFoundError("Delivery request not found")

    driver = (await db.execute(select(Driver).where(Driver.id == driver_id))).scalar_one_or_none()
    if not driver:
        raise NotFoundError("Driver not found")

    vehicle_id = vehicle_id or driver.vehicle_id
    if not vehicle_id:
        raise ValidationError.for_field("vehicle_id", "driver has no default vehicle")
    vehicle = (await db.execute(select(Vehicle).where(Vehicle.id == vehicle_id))).scalar_one_or_none()
    if not vehicle:
        raise NotFoundError("Vehicle not found")

    return await assign_trip(db, delivery_request=dr, driver=driver, vehicle=vehicle, actor=actor, now=now)


async def _pick_driver(db: AsyncSession) -> Driver | None:
    if settings.auto_assign_driver_id:
        return (await db.execute(
            select(Driver).where(Driver.id == settings.auto_assign_driver_id, Driver.is_active.is_(True))
        )).scalar_one_or_none()

    return (await db.execute(
        select(Driver)
        .where(Driver.is_active.is_(True), Driver.vehicle_id.is_not(None))
        .order_by(Driver.created_at.asc(), Driver.id.asc())
        .limit(1)
    )).scalars().first()


async def auto_assign(db: AsyncSession, dr: DeliveryRequest, *, now: datetime | None = None) -> Trip | None:
    """Optional assignment right after submission. Never fails the submission."""
    if not settings.auto_assign_enabled:
        return None

    driver = await _pick_driver(db)
    if driver is None or driver.vehicle is None:
        log.warning("trip_assignment: auto-assign found no driver delivery_request_id=%s", dr.id)
        return None

    try:
        return await assign_trip(db, delivery_request=dr, driver=driver, vehicle=driver.vehicle, actor="auto-assign", now=now)
    except (InvalidStateError, ValidationError) as e:
        log.warning("trip_assignment: auto-assign skipped delivery_request_id=%s reason=%s", dr.id, e.message)
        return None


async def cancel_trip(db: AsyncSession, *, trip_id: str, actor: str = "internal", now: datetime | None = None) -> Trip:
    """Cancels the trip only; the delivery request can be assigned again."""
    now = now or utcnow()
    trip = (await db.execute(
        select(Trip).where(Trip.id == trip_id).with_for_update().execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not trip:
        raise NotFoundError("Trip not found")

    transitions.cancel_trip(trip, now=now)
    trip.updated_by = actor
    log.info("trip_assignment: cancelled trip_id=%s", trip.id)
    return trip
