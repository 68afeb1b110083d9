"""
Tenant-facing delivery request operations: submit, read, cancel.

Submission maps each destination through the tenant's request schema, validates the
canonical result, then either creates a request or returns the live request that
already owns the same external ids.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.errors import NotFoundError, ValidationError
from lastmile.models.base import utcnow
from lastmile.models.delivery_request import DeliveryRequest, Destination, DestinationItem
from lastmile.models.enums import DeliveryRequestStatus, DestinationStatus
from lastmile.models.tenant import Tenant
from lastmile.schemas.delivery_request import MAX_DESTINATIONS, DeliveryRequestOptions, DestinationIn
from lastmile.services import transitions
from lastmile.services.schema_transformer import (
    REQUIRED_DESTINATION_FIELDS,
    REQUIRED_ITEM_FIELDS,
    transform_incoming,
    validate_required_fields,
)
from lastmile.services.trip_assignment import auto_assign


log = logging.getLogger(__name__)

# refreshed on an idempotent re-submit while the destination is still pending
REFRESHABLE_FIELDS = ("address", "lat", "lng", "contact_name", "contact_phone", "notes")


def _collect(details: list[dict[str, Any]], fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except ValidationError as e:
        details.extend(e.details)
    except PydanticValidationError as e:
        details.extend(ValidationError.from_pydantic(e, prefix=kwargs.get("prefix", "")).details)
    return None


def _validate_destination(canonical: dict[str, Any], *, prefix: str) -> DestinationIn:
    validate_required_fields(canonical, REQUIRED_DESTINATION_FIELDS, prefix=prefix)
    for j, item in enumerate(canonical.get("items") or []):
        validate_required_fields(item, REQUIRED_ITEM_FIELDS, prefix=f"{prefix}items.{j}.")
    try:
        return DestinationIn.model_validate(canonical)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, prefix=prefix)


def parse_submission(
    body: dict[str, Any], request_schema: dict[str, str] | None
) -> tuple[DeliveryRequestOptions, list[DestinationIn]]:
    """Transform and validate a raw submission. Every failing field is reported, not just the first."""
    if not isinstance(body, dict):
        raise ValidationError.for_field("body", "must be a JSON object")

    raw_destinations = body.get("destinations")
    if not isinstance(raw_destinations, list) or not raw_destinations:
        raise ValidationError.for_field("destinations", "at least one destination is required")
    if len(raw_destinations) > MAX_DESTINATIONS:
        raise ValidationError.for_field("destinations", f"at most {MAX_DESTINATIONS} destinations are allowed")

    details: list[dict[str, Any]] = []
    options = _collect(
        details,
        _validate_options,
        {k: body.get(k) for k in ("callback_url", "scheduled_date", "notes")},
    )

    destinations: list[DestinationIn] = []
    for i, raw in enumerate(raw_destinations):
        prefix = f"destinations.{i}."
        if not isinstance(raw, dict):
            details.append({"field": prefix.rstrip("."), "message": "must be an object"})
            continue
        canonical = transform_incoming(raw, request_schema)
        parsed = _collect(details, _validate_destination, canonical, prefix=prefix)
        if parsed is not None:
            destinations.append(parsed)

    if not details:
        seen: set[str] = set()
        for i, d in enumerate(destinations):
            if d.external_id in seen:
                details.append({"field": f"destinations.{i}.external_id", "message": f"duplicate external_id {d.external_id}"})
            seen.add(d.external_id)

    if details:
        missing = [d["field"] for d in details if d["message"] == "field is required"]
        if missing and len(missing) == len(details):
            raise ValidationError.missing_fields(missing)
        raise ValidationError("Invalid delivery request", details=details)

    return options, destinations


def _validate_options(values: dict[str, Any]) -> DeliveryRequestOptions:
    return DeliveryRequestOptions.model_validate(values)


async def get_tenant_schema(db: AsyncSession, tenant_id: str) -> dict[str, str] | None:
    tenant = (await db.execute(select(Tenant).where(Tenant.id == tenant_id))).scalar_one()
    return tenant.payload_schema.request_schema if tenant.payload_schema else None


async def _find_live_owner(db: AsyncSession, tenant_id: str, external_ids: list[str]) -> dict[str, str]:
    """external_id -> delivery_request_id among the tenant's non-cancelled requests."""
    rows = (await db.execute(
        select(Destination.external_id, Destination.delivery_request_id)
        .join(DeliveryRequest, DeliveryRequest.id == Destination.delivery_request_id)
        .where(
            Destination.tenant_id == tenant_id,
            Destination.external_id.in_(external_ids),
            DeliveryRequest.status != DeliveryRequestStatus.CANCELLED.value,
        )
    )).all()
    return {r.external_id: r.delivery_request_id for r in rows}


def _refresh_pending(dr: DeliveryRequest, destinations: list[DestinationIn], actor: str) -> int:
    by_external = {d.external_id: d for d in dr.destinations}
    refreshed = 0
    for incoming in destinations:
        dest = by_external[incoming.external_id]
        if dest.status != DestinationStatus.PENDING.value:
            continue
        for name in REFRESHABLE_FIELDS:
            setattr(dest, name, getattr(incoming, name))
        dest.updated_by = actor
        refreshed += 1
    return refreshed


def _build_destination(tenant_id: str, seq: int, d: DestinationIn, actor: str) -> Destination:
    return Destination(
        tenant_id=tenant_id,
        external_id=d.external_id,
        sequence_order=seq,
        address=d.address,
        lat=d.lat,
        lng=d.lng,
        contact_name=d.contact_name,
        contact_phone=d.contact_phone,
        notes=d.notes,
        status=DestinationStatus.PENDING.value,
        created_by=actor,
        updated_by=actor,
        items=[
            DestinationItem(
                order_item_id=item.order_item_id,
                name=item.name,
                quantity_ordered=item.quantity_ordered,
                quantity_delivered=0,
            )
            for item in (d.items or [])
        ],
    )


async def submit_delivery_request(
    db: AsyncSession, *, tenant_id: str, body: dict[str, Any], now: datetime | None = None
) -> tuple[DeliveryRequest, bool]:
    """Returns (request, created). created=False means an idempotent re-submit."""
    now = now or utcnow()
    request_schema = await get_tenant_schema(db, tenant_id)
    options, destinations = parse_submission(body, request_schema)

    external_ids = [d.external_id for d in destinations]
    owners = await _find_live_owner(db, tenant_id, external_ids)
    if owners:
        owner_ids = set(owners.values())
        if len(owners) == len(external_ids) and len(owner_ids) == 1:
            dr = await get_delivery_request(db, tenant_id=tenant_id, delivery_request_id=owner_ids.pop())
            refreshed = _refresh_pending(dr, destinations, tenant_id)
            log.info("delivery_request: idempotent re-submit id=%s refreshed=%d", dr.id, refreshed)
            return dr, False

        conflicting = sorted(owners)
        raise ValidationError(
            "External ids already belong to another delivery request: " + ", ".join(conflicting),
            details=[{"field": "external_id", "message": f"{x} already exists"} for x in conflicting],
        )

    dr = DeliveryRequest(
        tenant_id=tenant_id,
        status=DeliveryRequestStatus.PENDING.value,
        scheduled_date=options.scheduled_date,
        callback_url=options.callback_url,
        notes=options.notes,
        requested_at=now,
        created_by=tenant_id,
        updated_by=tenant_id,
        destinations=[_build_destination(tenant_id, i + 1, d, tenant_id) for i, d in enumerate(destinations)],
        trips=[],
    )
    db.add(dr)
    await db.flush()
    log.info("delivery_request: created id=%s tenant_id=%s destinations=%d", dr.id, tenant_id, len(destinations))

    await auto_assign(db, dr, now=now)
    return dr, True


async def get_delivery_request(
    db: AsyncSession, *, tenant_id: str, delivery_request_id: str, lock: bool = False
) -> DeliveryRequest:
    stmt = (
        select(DeliveryRequest)
        .where(DeliveryRequest.id == delivery_request_id, DeliveryRequest.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    dr = (await db.execute(stmt)).scalar_one_or_none()
    if not dr:
        raise NotFoundError("Delivery request not found")
    return dr


async def list_delivery_requests(
    db: AsyncSession, *, tenant_id: str, status: str | None = None, limit: int = 50, offset: int = 0
) -> list[DeliveryRequest]:
    stmt = select(DeliveryRequest).where(DeliveryRequest.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(DeliveryRequest.status == status)
    stmt = stmt.order_by(DeliveryRequest.requested_at.desc(), DeliveryRequest.id.desc()).limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all())


async def cancel_delivery_request(
    db: AsyncSession, *, tenant_id: str, delivery_request_id: str, now: datetime | None = None
) -> DeliveryRequest:
    now = now or utcnow()
    dr = await get_delivery_request(db, tenant_id=tenant_id, delivery_request_id=delivery_request_id, lock=True)
    transitions.cancel_request(dr, now=now)
    dr.updated_by = tenant_id

    trip = dr.active_trip
    if trip is not None:
        transitions.cancel_trip(trip, now=now)
        trip.updated_by = tenant_id

    log.info("delivery_request: cancelled id=%s trip_id=%s", dr.id, trip.id if trip else None)
    return dr
