from dataclasses import dataclass

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.security.api_key import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.db import get_db
from lastmile.core.security import hash_api_key
from lastmile.models.fleet import Driver
from lastmile.models.tenant import Tenant

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class TenantActor:
    tenant_id: str
    name: str


@dataclass(frozen=True)
class DriverActor:
    driver_id: str
    name: str
    vehicle_id: str | None


async def get_tenant(
    api_key: str | None = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> TenantActor:
    if not api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key")

    hashed = hash_api_key(api_key)
    row = (await db.execute(select(Tenant).where(Tenant.api_key_hash == hashed))).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=401, detail="Invalid API key")
    if not row.is_active:
        raise HTTPException(status_code=403, detail="Tenant is inactive")

    return TenantActor(tenant_id=row.id, name=row.name)


async def get_driver(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> DriverActor:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing bearer token", headers={"WWW-Authenticate": "Bearer"})

    hashed = hash_api_key(credentials.credentials)
    row = (await db.execute(select(Driver).where(Driver.token_hash == hashed))).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=401, detail="Invalid token", headers={"WWW-Authenticate": "Bearer"})
    if not row.is_active:
        raise HTTPException(status_code=403, detail="Driver is inactive")

    return DriverActor(driver_id=row.id, name=row.name, vehicle_id=row.vehicle_id)
