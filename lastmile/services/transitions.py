"""
Status rules for delivery requests, destinations and trips.

Pure functions over model instances: they check and apply status changes but
never touch the session. Callers (driver_actions, delivery_requests, trip_assignment)
own loading, locking and committing.
"""
from __future__ import annotations

from datetime import datetime

from lastmile.core.errors import InvalidStateError
from lastmile.models.delivery_request import DeliveryRequest, Destination
from lastmile.models.enums import DeliveryRequestStatus as DRS
from lastmile.models.enums import DestinationStatus as DS
from lastmile.models.enums import TripStatus as TS
from lastmile.models.trip import Trip


DESTINATION_TRANSITIONS: dict[DS, frozenset[DS]] = {
    DS.PENDING: frozenset({DS.ARRIVED, DS.COMPLETED, DS.FAILED}),
    DS.ARRIVED: frozenset({DS.ARRIVED, DS.COMPLETED, DS.FAILED}),
    DS.COMPLETED: frozenset(),
    DS.FAILED: frozenset(),
}

TRIP_TRANSITIONS: dict[TS, frozenset[TS]] = {
    TS.NOT_STARTED: frozenset({TS.IN_PROGRESS, TS.CANCELLED}),
    TS.IN_PROGRESS: frozenset({TS.COMPLETED, TS.CANCELLED}),
    TS.COMPLETED: frozenset(),
    TS.CANCELLED: frozenset(),
}

REQUEST_TRANSITIONS: dict[DRS, frozenset[DRS]] = {
    DRS.PENDING: frozenset({DRS.ACCEPTED, DRS.IN_PROGRESS, DRS.COMPLETED, DRS.CANCELLED}),
    DRS.ACCEPTED: frozenset({DRS.IN_PROGRESS, DRS.COMPLETED, DRS.CANCELLED}),
    DRS.IN_PROGRESS: frozenset({DRS.COMPLETED, DRS.CANCELLED}),
    DRS.COMPLETED: frozenset(),
    DRS.CANCELLED: frozenset(),
}

_ACTION_VERBS = {
    DS.ARRIVED: "marked as arrived",
    DS.COMPLETED: "completed",
    DS.FAILED: "marked as failed",
    TS.IN_PROGRESS: "started",
    TS.COMPLETED: "completed",
    TS.CANCELLED: "cancelled",
    DRS.ACCEPTED: "accepted",
    DRS.IN_PROGRESS: "started",
    DRS.COMPLETED: "completed",
    DRS.CANCELLED: "cancelled",
}


def _check(kind: str, table: dict, current, target) -> None:
    if target not in table[current]:
        raise InvalidStateError(
            f"{kind} cannot be {_ACTION_VERBS[target]} - current status: {current.value}",
            details=[{"field": "status", "message": current.value}],
        )


# ---- destinations ----

def check_destination(dest: Destination, target: DS) -> None:
    _check("Destination", DESTINATION_TRANSITIONS, DS(dest.status), target)


def mark_arrived(dest: Destination, *, now: datetime, lat: float | None = None, lng: float | None = None) -> bool:
    """Returns False when the destination was already arrived (first arrival is kept)."""
    check_destination(dest, DS.ARRIVED)
    if dest.status == DS.ARRIVED.value:
        return False
    dest.status = DS.ARRIVED.value
    dest.arrived_at = now
    dest.arrival_lat = lat
    dest.arrival_lng = lng
    return True


def mark_completed(dest: Destination, *, now: datetime, recipient_name: str | None = None, notes: str | None = None) -> None:
    check_destination(dest, DS.COMPLETED)
    dest.status = DS.COMPLETED.value
    dest.completed_at = now
    dest.recipient_name = recipient_name
    if notes is not None:
        dest.notes = notes


def mark_failed(dest: Destination, *, now: datetime, reason: str, notes: str | None = None) -> None:
    check_destination(dest, DS.FAILED)
    dest.status = DS.FAILED.value
    dest.completed_at = now
    dest.failure_reason = reason
    dest.failure_notes = notes


# ---- delivery requests ----

def check_request(dr: DeliveryRequest, target: DRS) -> None:
    _check("Delivery request", REQUEST_TRANSITIONS, DRS(dr.status), target)


def ensure_request_open(dr: DeliveryRequest) -> None:
    if dr.status in (DRS.COMPLETED.value, DRS.CANCELLED.value):
        raise InvalidStateError(f"Delivery request is {dr.status}")


def advance_request(dr: DeliveryRequest, target: DRS) -> bool:
    """Moves forward only. Returns False if the request is already at or past target."""
    order = [DRS.PENDING, DRS.ACCEPTED, DRS.IN_PROGRESS, DRS.COMPLETED]
    current = DRS(dr.status)
    if current is DRS.CANCELLED or order.index(current) >= order.index(target):
        return False
    check_request(dr, target)
    dr.status = target.value
    return True


def rollup_request_status(dr: DeliveryRequest, *, now: datetime) -> bool:
    """Completed iff every destination is terminal. Never moves a request backwards."""
    if dr.status in (DRS.COMPLETED.value, DRS.CANCELLED.value):
        return False
    if not dr.destinations or not all(d.is_terminal for d in dr.destinations):
        return False
    dr.status = DRS.COMPLETED.value
    dr.completed_at = now
    return True


def cancel_request(dr: DeliveryRequest, *, now: datetime) -> None:
    check_request(dr, DRS.CANCELLED)
    dr.status = DRS.CANCELLED.value
    dr.cancelled_at = now


# ---- trips ----

def check_trip(trip: Trip, target: TS) -> None:
    _check("Trip", TRIP_TRANSITIONS, TS(trip.status), target)


def ensure_trip_open(trip: Trip) -> None:
    """Destination actions are allowed on a not-started or running trip."""
    if trip.status in (TS.COMPLETED.value, TS.CANCELLED.value):
        raise InvalidStateError(f"Trip is {trip.status}")


def start_trip(trip: Trip, *, now: datetime, lat: float | None = None, lng: float | None = None) -> None:
    check_trip(trip, TS.IN_PROGRESS)
    if not trip.driver_id or not trip.vehicle_id:
        raise InvalidStateError("Trip cannot be started - no driver or vehicle assigned")
    trip.status = TS.IN_PROGRESS.value
    trip.started_at = now
    trip.start_lat = lat
    trip.start_lng = lng


def pending_destination_count(dr: DeliveryRequest) -> int:
    return sum(1 for d in dr.destinations if not d.is_terminal)


def complete_trip(
    trip: Trip,
    dr: DeliveryRequest,
    *,
    now: datetime,
    total_km: float,
    lat: float | None = None,
    lng: float | None = None,
) -> None:
    check_trip(trip, TS.COMPLETED)
    open_count = pending_destination_count(dr)
    if open_count:
        raise InvalidStateError(
            f"Cannot complete trip - {open_count} destinations not completed",
            details=[{"field": "destinations", "message": f"{open_count} not terminal"}],
        )
    trip.status = TS.COMPLETED.value
    trip.completed_at = now
    trip.actual_km = total_km
    trip.end_lat = lat
    trip.end_lng = lng


def cancel_trip(trip: Trip, *, now: datetime) -> None:
    check_trip(trip, TS.CANCELLED)
    trip.status = TS.CANCELLED.value
    trip.cancelled_at = now
