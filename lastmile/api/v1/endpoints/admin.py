from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.v1.serializers import trip_out
from lastmile.core.db import get_db
from lastmile.models.tenant import Tenant
from lastmile.schemas.admin import (
    CallbackConfigUpdate,
    DriverCreate,
    DriverCreated,
    TenantCreate,
    TenantCreated,
    TenantOut,
    TenantSchemaUpdate,
    TripAssign,
    VehicleCreate,
    VehicleOut,
)
from lastmile.schemas.driver import TripOut
from lastmile.services import admin as admin_service
from lastmile.services import trip_assignment
from lastmile.services.driver_actions import load_trip
from lastmile.services.internal_admin import require_internal_admin

router = APIRouter(prefix="/admin")


def _tenant_out(t: Tenant) -> TenantOut:
    schema = t.payload_schema
    return TenantOut(
        id=t.id,
        name=t.name,
        is_active=t.is_active,
        callback_url=t.callback_url,
        has_callback_api_key=bool(t.callback_api_key_ciphertext),
        request_schema=schema.request_schema if schema else None,
        callback_schema=schema.callback_schema if schema else None,
    )


@router.post("/tenants", response_model=TenantCreated, status_code=201)
async def create_tenant(
    payload: TenantCreate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TenantCreated:
    tenant, api_key = await admin_service.create_tenant(
        db,
        name=payload.name,
        callback_url=payload.callback_url,
        callback_api_key=payload.callback_api_key,
        request_schema=payload.request_schema,
        callback_schema=payload.callback_schema,
        actor=actor,
    )
    await db.commit()
    return TenantCreated(id=tenant.id, name=tenant.name, api_key=api_key)


@router.get("/tenants/{tenant_id}", response_model=TenantOut)
async def get_tenant(
    tenant_id: str,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TenantOut:
    return _tenant_out(await admin_service.get_tenant(db, tenant_id))


@router.put("/tenants/{tenant_id}/callback", response_model=TenantOut)
async def update_callback_config(
    tenant_id: str,
    payload: CallbackConfigUpdate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TenantOut:
    await admin_service.update_callback_config(
        db, tenant_id=tenant_id, callback_url=payload.callback_url, callback_api_key=payload.callback_api_key, actor=actor
    )
    await db.commit()
    return _tenant_out(await admin_service.get_tenant(db, tenant_id))


@router.put("/tenants/{tenant_id}/schema", response_model=TenantOut)
async def replace_schema(
    tenant_id: str,
    payload: TenantSchemaUpdate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TenantOut:
    await admin_service.replace_schema(
        db, tenant_id=tenant_id, request_schema=payload.request_schema, callback_schema=payload.callback_schema, actor=actor
    )
    await db.commit()
    return _tenant_out(await admin_service.get_tenant(db, tenant_id))


@router.post("/vehicles", response_model=VehicleOut, status_code=201)
async def create_vehicle(
    payload: VehicleCreate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> VehicleOut:
    v = await admin_service.create_vehicle(
        db, license_plate=payload.license_plate, make=payload.make, model=payload.model, actor=actor
    )
    await db.commit()
    return VehicleOut(
        id=v.id, license_plate=v.license_plate, make=v.make, model=v.model,
        app_tracked_km=v.app_tracked_km, is_active=v.is_active,
    )


@router.post("/drivers", response_model=DriverCreated, status_code=201)
async def create_driver(
    payload: DriverCreate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> DriverCreated:
    driver, token = await admin_service.create_driver(
        db, name=payload.name, phone=payload.phone, vehicle_id=payload.vehicle_id, actor=actor
    )
    await db.commit()
    return DriverCreated(id=driver.id, name=driver.name, vehicle_id=driver.vehicle_id, token=token)


@router.post("/trips/assign", response_model=TripOut, status_code=201)
async def assign_trip(
    payload: TripAssign,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TripOut:
    trip = await trip_assignment.assign_trip_by_ids(
        db,
        delivery_request_id=payload.delivery_request_id,
        driver_id=payload.driver_id,
        vehicle_id=payload.vehicle_id,
        actor=actor,
    )
    await db.commit()
    return trip_out(await load_trip(db, trip_id=trip.id, driver_id=None))


@router.post("/trips/{trip_id}/cancel", response_model=TripOut)
async def cancel_trip(
    trip_id: str,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
) -> TripOut:
    await trip_assignment.cancel_trip(db, trip_id=trip_id, actor=actor)
    await db.commit()
    return trip_out(await load_trip(db, trip_id=trip_id, driver_id=None))
