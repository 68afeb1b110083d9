from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.v1.serializers import delivery_request_out
from lastmile.core.db import get_db
from lastmile.models.enums import DeliveryRequestStatus
from lastmile.schemas.delivery_request import DeliveryRequestOut
from lastmile.services.auth import TenantActor, get_tenant
from lastmile.services.delivery_requests import (
    cancel_delivery_request,
    get_delivery_request,
    list_delivery_requests,
    submit_delivery_request,
)

router = APIRouter()


@router.post("/delivery-requests", response_model=DeliveryRequestOut, status_code=201)
async def submit(
    response: Response,
    body: dict[str, Any] = Body(...),
    tenant: TenantActor = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> DeliveryRequestOut:
    # destination fields arrive in the tenant's own shape; the service maps and validates them
    dr, created = await submit_delivery_request(db, tenant_id=tenant.tenant_id, body=body)
    await db.commit()

    if not created:
        response.status_code = 200
    dr = await get_delivery_request(db, tenant_id=tenant.tenant_id, delivery_request_id=dr.id)
    return delivery_request_out(dr)


@router.get("/delivery-requests", response_model=list[DeliveryRequestOut])
async def list_requests(
    status: DeliveryRequestStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant: TenantActor = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> list[DeliveryRequestOut]:
    rows = await list_delivery_requests(
        db, tenant_id=tenant.tenant_id, status=status.value if status else None, limit=limit, offset=offset
    )
    return [delivery_request_out(dr) for dr in rows]


@router.get("/delivery-requests/{delivery_request_id}", response_model=DeliveryRequestOut)
async def get_request(
    delivery_request_id: str,
    tenant: TenantActor = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> DeliveryRequestOut:
    dr = await get_delivery_request(db, tenant_id=tenant.tenant_id, delivery_request_id=delivery_request_id)
    return delivery_request_out(dr)


@router.post("/delivery-requests/{delivery_request_id}/cancel", response_model=DeliveryRequestOut)
async def cancel_request(
    delivery_request_id: str,
    tenant: TenantActor = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> DeliveryRequestOut:
    await cancel_delivery_request(db, tenant_id=tenant.tenant_id, delivery_request_id=delivery_request_id)
    await db.commit()

    dr = await get_delivery_request(db, tenant_id=tenant.tenant_id, delivery_request_id=delivery_request_id)
    return delivery_request_out(dr)
