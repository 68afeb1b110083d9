from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.v1.deps import get_proof_store
from lastmile.api.v1.serializers import destination_out, trip_out
from lastmile.core.db import get_db
from lastmile.models.enums import TripStatus
from lastmile.schemas.delivery_request import DestinationOut
from lastmile.schemas.driver import ArriveIn, CompleteDestinationIn, CompleteTripIn, FailDestinationIn, StartTripIn, TripOut
from lastmile.services import driver_actions
from lastmile.services.auth import DriverActor, get_driver
from lastmile.services.storage import LocalObjectStore

router = APIRouter(prefix="/driver")


async def _trip_response(db: AsyncSession, trip_id: str, driver_id: str) -> TripOut:
    trip = await driver_actions.load_trip(db, trip_id=trip_id, driver_id=driver_id)
    return trip_out(trip)


async def _destination_response(db: AsyncSession, trip_id: str, driver_id: str, destination_id: str) -> DestinationOut:
    trip = await driver_actions.load_trip(db, trip_id=trip_id, driver_id=driver_id)
    return destination_out(driver_actions.find_destination(trip, destination_id))


@router.get("/trips", response_model=list[TripOut])
async def list_trips(
    status: TripStatus | None = Query(default=None),
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> list[TripOut]:
    rows = await driver_actions.list_trips(db, driver_id=driver.driver_id, status=status.value if status else None)
    return [trip_out(t) for t in rows]


@router.get("/trips/{trip_id}", response_model=TripOut)
async def get_trip(
    trip_id: str,
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> TripOut:
    return await _trip_response(db, trip_id, driver.driver_id)


@router.post("/trips/{trip_id}/start", response_model=TripOut)
async def start_trip(
    trip_id: str,
    payload: StartTripIn | None = None,
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> TripOut:
    payload = payload or StartTripIn()
    await driver_actions.start_trip(db, driver_id=driver.driver_id, trip_id=trip_id, lat=payload.lat, lng=payload.lng)
    await db.commit()
    return await _trip_response(db, trip_id, driver.driver_id)


@router.post("/trips/{trip_id}/complete", response_model=TripOut)
async def complete_trip(
    trip_id: str,
    payload: CompleteTripIn,
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> TripOut:
    await driver_actions.complete_trip(
        db, driver_id=driver.driver_id, trip_id=trip_id, total_km=payload.total_km, lat=payload.lat, lng=payload.lng
    )
    await db.commit()
    return await _trip_response(db, trip_id, driver.driver_id)


@router.post("/trips/{trip_id}/destinations/{destination_id}/arrive", response_model=DestinationOut)
async def arrive(
    trip_id: str,
    destination_id: str,
    payload: ArriveIn | None = None,
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> DestinationOut:
    payload = payload or ArriveIn()
    await driver_actions.arrive(
        db, driver_id=driver.driver_id, trip_id=trip_id, destination_id=destination_id, lat=payload.lat, lng=payload.lng
    )
    await db.commit()
    return await _destination_response(db, trip_id, driver.driver_id, destination_id)


@router.post("/trips/{trip_id}/destinations/{destination_id}/complete", response_model=DestinationOut)
async def complete_destination(
    trip_id: str,
    destination_id: str,
    payload: CompleteDestinationIn | None = None,
    driver: DriverActor = Depends(get_driver),
    store: LocalObjectStore = Depends(get_proof_store),
    db: AsyncSession = Depends(get_db),
) -> DestinationOut:
    await driver_actions.complete_destination(
        db,
        driver_id=driver.driver_id,
        trip_id=trip_id,
        destination_id=destination_id,
        data=payload or CompleteDestinationIn(),
        store=store,
    )
    await db.commit()
    return await _destination_response(db, trip_id, driver.driver_id, destination_id)


@router.post("/trips/{trip_id}/destinations/{destination_id}/fail", response_model=DestinationOut)
async def fail_destination(
    trip_id: str,
    destination_id: str,
    payload: FailDestinationIn,
    driver: DriverActor = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
) -> DestinationOut:
    await driver_actions.fail_destination(
        db,
        driver_id=driver.driver_id,
        trip_id=trip_id,
        destination_id=destination_id,
        reason=payload.reason,
        notes=payload.notes,
    )
    await db.commit()
    return await _destination_response(db, trip_id, driver.driver_id, destination_id)
