"""Operator configuration: tenants, their schemas and callback settings, drivers and vehicles."""
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.crypto import encrypt_secret
from lastmile.core.errors import NotFoundError, ValidationError
from lastmile.core.security import generate_api_key
from lastmile.models.fleet import Driver, Vehicle
from lastmile.models.tenant import Tenant, TenantSchema
from lastmile.schemas.delivery_request import DeliveryRequestOptions
from lastmile.services.schema_transformer import DEFAULT_CALLBACK_SCHEMA, DEFAULT_REQUEST_SCHEMA, validate_schema_config


log = logging.getLogger(__name__)


def _check_callback_url(url: str | None) -> None:
    if url is None:
        return
    try:
        DeliveryRequestOptions(callback_url=url)
    except ValueError:
        raise ValidationError.for_field("callback_url", "must be an http(s) URL")


async def get_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = (await db.execute(
        select(Tenant).where(Tenant.id == tenant_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not tenant:
        raise NotFoundError("Tenant not found")
    return tenant


async def create_tenant(
    db: AsyncSession,
    *,
    name: str,
    callback_url: str | None = None,
    callback_api_key: str | None = None,
    request_schema: dict[str, str] | None = None,
    callback_schema: dict[str, str] | None = None,
    actor: str = "internal",
) -> tuple[Tenant, str]:
    """Returns (tenant, plain_api_key). The plain key is not stored."""
    _check_callback_url(callback_url)
    validate_schema_config(request_schema, callback_schema)

    key = generate_api_key("tk")
    tenant = Tenant(
        name=name,
        api_key_prefix=key.prefix,
        api_key_hash=key.hashed,
        callback_url=callback_url,
        callback_api_key_ciphertext=encrypt_secret(callback_api_key) if callback_api_key else None,
        is_active=True,
        created_by=actor,
        updated_by=actor,
    )
    tenant.payload_schema = TenantSchema(
        request_schema=dict(request_schema or DEFAULT_REQUEST_SCHEMA),
        callback_schema=dict(callback_schema or DEFAULT_CALLBACK_SCHEMA),
        created_by=actor,
        updated_by=actor,
    )
    db.add(tenant)
    await db.flush()

    log.info("admin: tenant created tenant_id=%s", tenant.id)
    return tenant, key.plain


async def update_callback_config(
    db: AsyncSession, *, tenant_id: str, callback_url: str | None, callback_api_key: str | None, actor: str = "internal"
) -> Tenant:
    _check_callback_url(callback_url)
    tenant = await get_tenant(db, tenant_id)
    tenant.callback_url = callback_url
    if callback_api_key is not None:
        tenant.callback_api_key_ciphertext = encrypt_secret(callback_api_key) if callback_api_key else None
    tenant.updated_by = actor
    return tenant


async def replace_schema(
    db: AsyncSession,
    *,
    tenant_id: str,
    request_schema: dict[str, str],
    callback_schema: dict[str, str] | None,
    actor: str = "internal",
) -> TenantSchema:
    validate_schema_config(request_schema, callback_schema)
    tenant = await get_tenant(db, tenant_id)

    schema = tenant.payload_schema
    if schema is None:
        schema = TenantSchema(tenant_id=tenant.id, created_by=actor)
        tenant.payload_schema = schema
    schema.request_schema = dict(request_schema)
    schema.callback_schema = dict(callback_schema) if callback_schema else None
    schema.updated_by = actor
    await db.flush()
    return schema


async def create_vehicle(
    db: AsyncSession, *, license_plate: str, make: str | None = None, model: str | None = None, actor: str = "internal"
) -> Vehicle:
    exists = (await db.execute(select(Vehicle.id).where(Vehicle.license_plate == license_plate))).scalar_one_or_none()
    if exists:
        raise ValidationError.for_field("license_plate", "already registered")

    vehicle = Vehicle(license_plate=license_plate, make=make, model=model, app_tracked_km=0.0, is_active=True,
                      created_by=actor, updated_by=actor)
    db.add(vehicle)
    try:
        await db.flush()
    except IntegrityError:
        raise ValidationError.for_field("license_plate", "already registered")
    return vehicle


async def create_driver(
    db: AsyncSession, *, name: str, phone: str | None = None, vehicle_id: str | None = None, actor: str = "internal"
) -> tuple[Driver, str]:
    """Returns (driver, plain_token). The plain token is not stored."""
    vehicle = None
    if vehicle_id:
        vehicle = (await db.execute(select(Vehicle).where(Vehicle.id == vehicle_id))).scalar_one_or_none()
        if not vehicle:
            raise NotFoundError("Vehicle not found")

    token = generate_api_key("drv")
    driver = Driver(
        name=name,
        phone=phone,
        vehicle_id=vehicle_id,
        token_prefix=token.prefix,
        token_hash=token.hashed,
        is_active=True,
        created_by=actor,
        updated_by=actor,
    )
    driver.vehicle = vehicle
    db.add(driver)
    await db.flush()

    log.info("admin: driver created driver_id=%s", driver.id)
    return driver, token.plain
