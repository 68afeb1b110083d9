"""
Callback delivery: one HTTP attempt per call, outcome recorded on the CallbackDelivery row.

Each attempt re-reads the source destination so the tenant always receives the
latest state, not the state at enqueue time. Failures are rescheduled from the
fixed backoff table until the attempt ceiling, then dead-lettered.
Configuration problems (no URL, no schema, unreadable credential, source gone) skip the callback for good.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cryptography.fernet import InvalidToken
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.crypto import decrypt_secret
from lastmile.core.errors import ConfigurationError, InvalidStateError, NotFoundError
from lastmile.models.base import utcnow
from lastmile.models.callback import CallbackAttempt, CallbackDelivery
from lastmile.models.delivery_request import DeliveryRequest, Destination
from lastmile.models.enums import CallbackStatus
from lastmile.models.tenant import Tenant
from lastmile.services.callback_http import CallbackHttpClient, HttpResult
from lastmile.services.retry import next_attempt_at
from lastmile.services.schema_transformer import transform_outgoing


log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FINAL_STATUSES = {
    CallbackStatus.SUCCEEDED.value,
    CallbackStatus.SKIPPED.value,
    CallbackStatus.DEAD_LETTERED.value,
}

TEST_EXTERNAL_ID = "TEST-123"


@dataclass(frozen=True)
class CallbackTarget:
    tenant_id: str
    url: str
    api_key: str | None
    body: dict[str, Any]


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def destination_canonical(dest: Destination) -> dict[str, Any]:
    """Canonical callback values for a destination; the tenant map decides what is sent."""
    failed = dest.status == "failed"
    return {
        "external_id": dest.external_id,
        "status": dest.status,
        "completed_at": _iso(dest.completed_at),
        "delivered_at": _iso(dest.completed_at),
        "recipient_name": dest.recipient_name,
        "notes": dest.failure_notes if failed else dest.notes,
        "failure_reason": dest.failure_reason,
        "items": [
            {
                "order_item_id": item.order_item_id,
                "quantity_ordered": item.quantity_ordered,
                "quantity_delivered": item.quantity_delivered,
                "reason": item.delivery_reason,
                "notes": item.notes,
            }
            for item in dest.items
        ],
    }


async def build_destination_target(db: AsyncSession, destination_id: str) -> CallbackTarget:
    dest = (await db.execute(select(Destination).where(Destination.id == destination_id))).scalar_one_or_none()
    if not dest:
        raise ConfigurationError.missing_source("destination", destination_id)

    dr = (await db.execute(
        select(DeliveryRequest).where(DeliveryRequest.id == dest.delivery_request_id)
    )).scalar_one()
    tenant = (await db.execute(select(Tenant).where(Tenant.id == dest.tenant_id))).scalar_one()

    url = dr.callback_url or tenant.callback_url
    if not url:
        raise ConfigurationError.missing_url(tenant.id)

    schema = tenant.payload_schema
    if schema is None:
        raise ConfigurationError.missing_schema(tenant.id)

    api_key = None
    if tenant.callback_api_key_ciphertext:
        try:
            api_key = decrypt_secret(tenant.callback_api_key_ciphertext)
        except InvalidToken:
            raise ConfigurationError.unreadable_credential(tenant.id)

    try:
        body = transform_outgoing(destination_canonical(dest), schema.callback_schema)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Callback payload for tenant {tenant.id} cannot be built: {e}")

    return CallbackTarget(tenant_id=tenant.id, url=url, api_key=api_key, body=body)


async def load_callback_target(db: AsyncSession, cb: CallbackDelivery) -> CallbackTarget:
    """Destinations are the only callback source; trip.completed goes to reconciliation, not to a tenant URL."""
    if cb.source_type == "destination":
        return await build_destination_target(db, cb.source_id)
    raise ConfigurationError(f"Unsupported callback source type {cb.source_type}")


async def _lease_held(db: AsyncSession, callback_id: str, lease_id: str) -> bool:
    current = (await db.execute(
        select(CallbackDelivery.lease_id, CallbackDelivery.status)
        .where(CallbackDelivery.id == callback_id)
        .with_for_update()
    )).one_or_none()
    return current is not None and current.lease_id == lease_id and current.status == CallbackStatus.SENDING.value


def _release(cb: CallbackDelivery) -> None:
    cb.lease_id = None
    cb.lease_expires_at = None


def _mark_skipped(cb: CallbackDelivery, err: ConfigurationError) -> None:
    cb.status = CallbackStatus.SKIPPED.value
    cb.status_detail = err.message
    cb.next_attempt_at = None
    _release(cb)
    log.warning(
        "callback: skipped callback_id=%s source=%s:%s tenant_id=%s reason=%s",
        cb.id, cb.source_type, cb.source_id, cb.tenant_id, err.message,
    )


async def deliver_callback(
    db: AsyncSession,
    callback_id: str,
    lease_id: str | None = None,
    *,
    http: CallbackHttpClient,
    now: datetime | None = None,
) -> str:
    """
    Run one attempt for a callback and record the outcome (the caller commits).
    With a lease_id, only the lease holder may write; without one the row must be pending.
    Returns the resulting status, or "lease_lost"/"missing".
    """
    now = now or utcnow()

    cb = (await db.execute(
        select(CallbackDelivery)
        .where(CallbackDelivery.id == callback_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not cb:
        return "missing"
    if cb.status in FINAL_STATUSES:
        return cb.status
    if lease_id is not None and (cb.lease_id != lease_id or cb.status != CallbackStatus.SENDING.value):
        log.info("callback: lease lost callback_id=%s", callback_id)
        return "lease_lost"
    if lease_id is None and cb.status != CallbackStatus.PENDING.value:
        # claimed by a worker
        return "lease_lost"

    try:
        target = await load_callback_target(db, cb)
    except ConfigurationError as e:
        _mark_skipped(cb, e)
        return cb.status

    attempt_number = cb.attempts + 1
    with tracer.start_as_current_span("callback.attempt") as span:
        span.set_attribute("callback.id", cb.id)
        span.set_attribute("callback.attempt", attempt_number)
        span.set_attribute("callback.source_id", cb.source_id)
        result = await http.post_json(url=target.url, json_body=target.body, bearer_token=target.api_key, request_id=cb.id)
        if result.status_code is not None:
            span.set_attribute("http.status_code", result.status_code)
        if not result.ok:
            span.set_attribute("callback.error_code", result.error_code or "")

    # outcome is only written by the current lease holder
    if lease_id is not None and not await _lease_held(db, callback_id, lease_id):
        log.warning("callback: lease lost during attempt callback_id=%s attempt=%d", callback_id, attempt_number)
        return "lease_lost"

    cb.attempts = attempt_number
    cb.last_attempt_at = now
    cb.last_status_code = result.status_code
    db.add(CallbackAttempt(
        callback_id=cb.id,
        attempt_number=attempt_number,
        status="succeeded" if result.ok else "failed",
        url=target.url,
        request=target.body,
        response=result.detail or {},
        status_code=result.status_code,
        error_code=result.error_code,
        error_message=result.error_message,
        elapsed_ms=result.elapsed_ms,
        created_at=now,
    ))
    _release(cb)

    if result.ok:
        cb.status = CallbackStatus.SUCCEEDED.value
        cb.delivered_at = now
        cb.next_attempt_at = None
        cb.last_error = None
        cb.status_detail = None
        log.info(
            "callback: delivered callback_id=%s source=%s:%s attempt=%d status=%s",
            cb.id, cb.source_type, cb.source_id, attempt_number, result.status_code,
        )
        return cb.status

    cb.last_error = result.error_message
    cb.status_detail = result.error_code

    if attempt_number >= settings.callback_max_attempts:
        cb.status = CallbackStatus.DEAD_LETTERED.value
        cb.dead_lettered_at = now
        cb.next_attempt_at = None
        log.error(
            "callback: permanently failed callback_id=%s source=%s:%s external_id=%s attempts=%d last_error=%s",
            cb.id, cb.source_type, cb.source_id, cb.external_id, attempt_number, cb.last_error,
        )
        return cb.status

    cb.status = CallbackStatus.PENDING.value
    cb.next_attempt_at = next_attempt_at(now, attempt_number)
    log.warning(
        "callback: attempt failed callback_id=%s attempt=%d error=%s next_attempt_at=%s",
        cb.id, attempt_number, cb.last_error, cb.next_attempt_at.isoformat(),
    )
    return cb.status


# ---- operator side channel ----

async def send_callback_now(db: AsyncSession, destination_id: str, *, http: CallbackHttpClient) -> HttpResult:
    """
    Single synchronous attempt for a destination. Not recorded and not retried.
    Configuration problems are raised to the operator instead of skipping.
    """
    exists = (await db.execute(select(Destination.id).where(Destination.id == destination_id))).scalar_one_or_none()
    if not exists:
        raise NotFoundError("Destination not found")

    target = await build_destination_target(db, destination_id)
    result = await http.post_json(url=target.url, json_body=target.body, bearer_token=target.api_key)
    log.info(
        "callback: send-now destination_id=%s status=%s ok=%s", destination_id, result.status_code, result.ok
    )
    return result


def build_test_payload(now: datetime | None = None) -> dict[str, Any]:
    return {
        "external_id": TEST_EXTERNAL_ID,
        "status": "completed",
        "completed_at": (now or utcnow()).isoformat(),
        "message": "This is a test callback from the last-mile delivery service",
    }


async def send_test_callback(url: str, api_key: str | None, *, http: CallbackHttpClient) -> HttpResult:
    return await http.post_json(url=url, json_body=build_test_payload(), bearer_token=api_key)


async def requeue_callback(db: AsyncSession, callback_id: str, *, now: datetime | None = None) -> CallbackDelivery:
    """Operator retry for a dead-lettered or skipped callback; the attempt budget starts over."""
    cb = (await db.execute(
        select(CallbackDelivery)
        .where(CallbackDelivery.id == callback_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not cb:
        raise NotFoundError("Callback not found")
    if cb.status not in (CallbackStatus.DEAD_LETTERED.value, CallbackStatus.SKIPPED.value):
        raise InvalidStateError(f"Callback cannot be requeued - current status: {cb.status}")

    cb.status = CallbackStatus.PENDING.value
    cb.attempts = 0
    cb.next_attempt_at = now or utcnow()
    cb.dead_lettered_at = None
    cb.status_detail = "requeued by operator"
    _release(cb)
    log.info("callback: requeued callback_id=%s", cb.id)
    return cb
