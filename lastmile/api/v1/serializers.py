from lastmile.models.delivery_request import DeliveryRequest, Destination
from lastmile.models.trip import Trip
from lastmile.schemas.delivery_request import DeliveryRequestOut, DestinationOut
from lastmile.schemas.driver import TripDeliveryRequestOut, TripOut


def destination_out(d: Destination) -> DestinationOut:
    return DestinationOut.model_validate(d)


def delivery_request_out(dr: DeliveryRequest) -> DeliveryRequestOut:
    trip = dr.active_trip
    return DeliveryRequestOut(
        id=dr.id,
        tenant_id=dr.tenant_id,
        status=dr.status,
        scheduled_date=dr.scheduled_date,
        total_km=dr.total_km,
        actual_km=dr.actual_km,
        callback_url=dr.callback_url,
        notes=dr.notes,
        requested_at=dr.requested_at,
        completed_at=dr.completed_at,
        cancelled_at=dr.cancelled_at,
        trip_id=trip.id if trip else None,
        destinations=[destination_out(d) for d in dr.destinations],
    )


def trip_out(t: Trip, *, with_destinations: bool = True) -> TripOut:
    dr = t.delivery_request
    return TripOut(
        id=t.id,
        delivery_request_id=t.delivery_request_id,
        driver_id=t.driver_id,
        vehicle_id=t.vehicle_id,
        status=t.status,
        planned_km=t.planned_km,
        actual_km=t.actual_km,
        assigned_at=t.assigned_at,
        started_at=t.started_at,
        completed_at=t.completed_at,
        cancelled_at=t.cancelled_at,
        delivery_request=TripDeliveryRequestOut(
            id=dr.id,
            status=dr.status,
            notes=dr.notes,
            destinations=[destination_out(d) for d in dr.destinations],
        ) if with_destinations and dr is not None else None,
    )
