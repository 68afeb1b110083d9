import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from lastmile.models.callback import CallbackAttempt, CallbackDelivery
from lastmile.models.delivery_request import DeliveryRequest, Destination, DestinationItem
from lastmile.models.tenant import Tenant, TenantSchema
from lastmile.services.callback_queue import CALLBACK_TASK, dispatch_due_callbacks
from lastmile.services.callbacks import TEST_EXTERNAL_ID, deliver_callback

from fixtures_seed import CALLBACK_API_KEY, CALLBACK_URL, create_tenant


T0 = datetime(2030, 3, 1, 8, 0, tzinfo=timezone.utc)


async def _completed_destination(db, *, dr_callback_url: str | None = None, source_id: str | None = None, **tenant_kwargs):
    """A completed destination (one item delivered short) with its pending callback row."""
    tenant = await create_tenant(db, **tenant_kwargs)
    dest = Destination(
        tenant_id=tenant["tenant_id"],
        external_id="MELO-001",
        sequence_order=1,
        address="1 Makariou Ave",
        lat=35.0,
        lng=33.0,
        status="completed",
        completed_at=T0,
        recipient_name="Eleni",
        notes="left with neighbour",
        items=[
            DestinationItem(
                order_item_id="SKU-1",
                quantity_ordered=3,
                quantity_delivered=2,
                delivery_reason="damaged_in_transit",
                notes="crushed",
            )
        ],
    )
    dr = DeliveryRequest(
        tenant_id=tenant["tenant_id"],
        status="completed",
        callback_url=dr_callback_url,
        destinations=[dest],
        trips=[],
    )
    db.add(dr)
    await db.flush()

    cb = CallbackDelivery(
        tenant_id=tenant["tenant_id"],
        source_type="destination",
        source_id=source_id or dest.id,
        event_type="destination.completed",
        external_id="MELO-001",
        status="pending",
        attempts=0,
        next_attempt_at=T0,
    )
    db.add(cb)
    await db.commit()
    return cb.id, dest.id


async def _reload(db, callback_id: str) -> CallbackDelivery:
    return (await db.execute(
        select(CallbackDelivery).where(CallbackDelivery.id == callback_id).execution_options(populate_existing=True)
    )).scalar_one()


async def _attempt_rows(db, callback_id: str) -> list[CallbackAttempt]:
    return list((await db.execute(
        select(CallbackAttempt).where(CallbackAttempt.callback_id == callback_id).order_by(CallbackAttempt.attempt_number)
    )).scalars().all())


async def _run_until_final(db, callback_id, http, enqueue, *, start: datetime):
    """Drive dispatcher + worker like production, jumping the clock to each next_attempt_at."""
    now = start
    delays: list[float] = []
    outcome = None
    for _ in range(10):
        if await dispatch_due_callbacks(db, enqueue, now=now) == 0:
            break
        task, (cid, lease_id), queue = enqueue.calls[-1]
        assert (task, cid, queue) == (CALLBACK_TASK, callback_id, "callbacks")

        outcome = await deliver_callback(db, cid, lease_id, http=http, now=now)
        await db.commit()
        if outcome != "pending":
            break

        cb = await _reload(db, callback_id)
        delay = cb.next_attempt_at - now
        delays.append(delay.total_seconds())
        # not due before its backoff slot
        assert await dispatch_due_callbacks(db, enqueue, now=cb.next_attempt_at - timedelta(seconds=1)) == 0
        now = cb.next_attempt_at
    return outcome, delays, now


@pytest.mark.asyncio
async def test_delivery_builds_tenant_payload_with_credential(db_session, tenant_endpoint, callback_http, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)

    outcome, delays, _ = await _run_until_final(db_session, cb_id, callback_http, fake_enqueue, start=T0)

    assert outcome == "succeeded"
    assert delays == []
    req = tenant_endpoint.requests[0]
    assert str(req.url) == CALLBACK_URL
    assert req.method == "POST"
    assert req.headers["Authorization"] == f"Bearer {CALLBACK_API_KEY}"
    assert req.headers["X-Request-Id"] == cb_id
    assert tenant_endpoint.bodies()[0] == {
        "order_id": "MELO-001",
        "delivery_status": "completed",
        "delivered_at": T0.isoformat(),
        "received_by": "Eleni",
        "driver_notes": "left with neighbour",
        "lines": [{"sku": "SKU-1", "qty_delivered": 2, "shortfall_reason": "damaged_in_transit", "notes": "crushed"}],
    }

    cb = await _reload(db_session, cb_id)
    assert cb.status == "succeeded"
    assert cb.attempts == 1
    assert cb.delivered_at == T0
    assert cb.lease_id is None


@pytest.mark.asyncio
async def test_four_failures_then_success_follows_fixed_schedule(db_session, tenant_endpoint, callback_http, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)
    tenant_endpoint.responses = [httpx.Response(503) for _ in range(4)] + [httpx.Response(200, json={"ok": True})]

    outcome, delays, last = await _run_until_final(db_session, cb_id, callback_http, fake_enqueue, start=T0)

    assert outcome == "succeeded"
    assert delays == [10, 30, 60, 120]
    assert len(tenant_endpoint.requests) == 5

    attempts = await _attempt_rows(db_session, cb_id)
    assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5]
    assert [a.status for a in attempts] == ["failed"] * 4 + ["succeeded"]
    assert attempts[0].status_code == 503
    assert attempts[0].error_code == "HTTP_503"

    # no 6th attempt after success
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=last + timedelta(days=1)) == 0
    assert len(tenant_endpoint.requests) == 5


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_with_error_log(db_session, tenant_endpoint, callback_http, fake_enqueue, caplog):
    caplog.set_level(logging.INFO)
    cb_id, dest_id = await _completed_destination(db_session)
    tenant_endpoint.responses = [httpx.Response(500, text="boom") for _ in range(5)]

    outcome, delays, last = await _run_until_final(db_session, cb_id, callback_http, fake_enqueue, start=T0)

    assert outcome == "dead_lettered"
    assert delays == [10, 30, 60, 120]

    cb = await _reload(db_session, cb_id)
    assert cb.status == "dead_lettered"
    assert cb.attempts == 5
    assert cb.next_attempt_at is None
    assert cb.dead_lettered_at == last
    assert cb.last_status_code == 500
    assert "HTTP status 500" in cb.last_error

    errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.name == "lastmile.services.callbacks"]
    assert len(errors) == 1
    msg = errors[0].getMessage()
    assert "permanently failed" in msg
    assert cb_id in msg
    assert dest_id in msg
    assert "attempts=5" in msg

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=last + timedelta(days=1)) == 0
    assert len(tenant_endpoint.requests) == 5


@pytest.mark.asyncio
async def test_transport_errors_are_retried(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(db_session)
    tenant_endpoint.responses = [httpx.ConnectError("connection refused"), httpx.ReadTimeout("timed out")]

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "pending"
    await db_session.commit()
    cb = await _reload(db_session, cb_id)
    assert cb.status_detail == "REQUEST_ERROR"
    assert cb.last_error.startswith("Network error while calling")
    assert cb.next_attempt_at == T0 + timedelta(seconds=10)

    now = cb.next_attempt_at
    assert await deliver_callback(db_session, cb_id, http=callback_http, now=now) == "pending"
    await db_session.commit()
    cb = await _reload(db_session, cb_id)
    assert cb.status_detail == "TIMEOUT"
    assert cb.next_attempt_at == now + timedelta(seconds=30)
    assert cb.attempts == 2


@pytest.mark.asyncio
async def test_missing_callback_url_skips_without_sending(db_session, tenant_endpoint, callback_http, caplog):
    caplog.set_level(logging.WARNING)
    cb_id, _ = await _completed_destination(db_session, callback_url=None)

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "skipped"
    await db_session.commit()

    cb = await _reload(db_session, cb_id)
    assert cb.status == "skipped"
    assert cb.next_attempt_at is None
    assert cb.status_detail.startswith("No callback URL configured")
    assert tenant_endpoint.requests == []
    assert await _attempt_rows(db_session, cb_id) == []
    assert any("skipped" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)


@pytest.mark.asyncio
async def test_request_callback_url_overrides_tenant(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(
        db_session, callback_url=None, dr_callback_url="https://override.melo.test/cb"
    )

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "succeeded"
    assert str(tenant_endpoint.requests[0].url) == "https://override.melo.test/cb"


@pytest.mark.asyncio
async def test_missing_schema_record_skips(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(db_session, with_schema=False)

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "skipped"
    await db_session.commit()
    cb = await _reload(db_session, cb_id)
    assert cb.status_detail.startswith("No payload schema configured")
    assert tenant_endpoint.requests == []


@pytest.mark.asyncio
async def test_schema_record_without_callback_map_uses_default_shape(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(db_session)
    schema = (await db_session.execute(select(TenantSchema))).scalar_one()
    schema.callback_schema = None
    await db_session.commit()

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "succeeded"
    body = tenant_endpoint.bodies()[0]
    assert body["external_id"] == "MELO-001"
    assert body["status"] == "completed"
    assert body["completed_at"] == T0.isoformat()
    assert body["items"] == [{"order_item_id": "SKU-1", "quantity_delivered": 2, "reason": "damaged_in_transit", "notes": "crushed"}]


@pytest.mark.asyncio
async def test_missing_source_entity_skips(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(db_session, source_id="dst_gone")

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "skipped"
    await db_session.commit()
    cb = await _reload(db_session, cb_id)
    assert "no longer exists" in cb.status_detail
    assert tenant_endpoint.requests == []


@pytest.mark.asyncio
async def test_payload_reflects_state_at_send_time(db_session, tenant_endpoint, callback_http):
    cb_id, dest_id = await _completed_destination(db_session)
    dest = (await db_session.execute(select(Destination).where(Destination.id == dest_id))).scalar_one()
    dest.recipient_name = "Corrected Name"
    await db_session.commit()

    await deliver_callback(db_session, cb_id, http=callback_http, now=T0)
    assert tenant_endpoint.bodies()[0]["received_by"] == "Corrected Name"


@pytest.mark.asyncio
async def test_stale_lease_cannot_deliver(db_session, tenant_endpoint, callback_http, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0, lease_seconds=60) == 1
    old_lease = fake_enqueue.calls[-1][1][1]

    # worker never reported back; the lease expires and the row is claimed again
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + timedelta(seconds=61)) == 1
    new_lease = fake_enqueue.calls[-1][1][1]
    assert new_lease != old_lease

    assert await deliver_callback(db_session, cb_id, old_lease, http=callback_http, now=T0) == "lease_lost"
    assert tenant_endpoint.requests == []

    assert await deliver_callback(db_session, cb_id, new_lease, http=callback_http, now=T0) == "succeeded"
    await db_session.commit()
    assert len(tenant_endpoint.requests) == 1
    # the expired lease counts as one failed attempt
    assert (await _reload(db_session, cb_id)).attempts == 2


@pytest.mark.asyncio
async def test_expired_leases_count_toward_attempt_ceiling(db_session, fake_enqueue, caplog):
    caplog.set_level(logging.WARNING)
    cb_id, _ = await _completed_destination(db_session)
    lease = timedelta(seconds=121)

    # a worker that crashes on every run never records an outcome
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0) == 1
    for n in range(1, 5):
        assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + n * lease) == 1
        assert (await _reload(db_session, cb_id)).attempts == n

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + 5 * lease) == 0
    cb = await _reload(db_session, cb_id)
    assert cb.status == "dead_lettered"
    assert cb.attempts == 5
    assert cb.status_detail == "LEASE_EXPIRED"
    assert cb.dead_lettered_at == T0 + 5 * lease
    assert any(
        "permanently failed" in r.getMessage() and cb_id in r.getMessage()
        for r in caplog.records if r.levelno == logging.ERROR
    )

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + timedelta(days=1)) == 0


@pytest.mark.asyncio
async def test_undecryptable_credential_skips_instead_of_looping(db_session, tenant_endpoint, callback_http, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)
    tenant = (await db_session.execute(select(Tenant))).scalar_one()
    # encrypted under a key that has since been rotated away
    tenant.callback_api_key_ciphertext = "not-a-fernet-token"
    await db_session.commit()

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0) == 1
    lease_id = fake_enqueue.calls[-1][1][1]
    assert await deliver_callback(db_session, cb_id, lease_id, http=callback_http, now=T0) == "skipped"
    await db_session.commit()

    cb = await _reload(db_session, cb_id)
    assert cb.status == "skipped"
    assert cb.lease_id is None
    assert "cannot be decrypted" in cb.status_detail
    assert tenant_endpoint.requests == []
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + timedelta(hours=1)) == 0


@pytest.mark.asyncio
async def test_send_now_reports_undecryptable_credential(client, db_session, admin_headers):
    _, dest_id = await _completed_destination(db_session)
    tenant = (await db_session.execute(select(Tenant))).scalar_one()
    tenant.callback_api_key_ciphertext = "not-a-fernet-token"
    await db_session.commit()

    r = await client.post(f"/v1/admin/destinations/{dest_id}/callback", headers=admin_headers)
    assert r.status_code == 422
    assert r.json()["code"] == "configuration_error"
    assert "cannot be decrypted" in r.json()["message"]


@pytest.mark.asyncio
async def test_empty_callback_map_uses_default_shape(db_session, tenant_endpoint, callback_http):
    cb_id, _ = await _completed_destination(db_session)
    schema = (await db_session.execute(select(TenantSchema))).scalar_one()
    schema.callback_schema = {}
    await db_session.commit()

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "succeeded"
    body = tenant_endpoint.bodies()[0]
    assert body["external_id"] == "MELO-001"
    assert body["status"] == "completed"


@pytest.mark.asyncio
async def test_operator_clearing_callback_map_restores_default_shape(
    client, db_session, tenant_endpoint, callback_http, admin_headers
):
    cb_id, _ = await _completed_destination(db_session)
    tenant = (await db_session.execute(select(Tenant))).scalar_one()

    r = await client.put(
        f"/v1/admin/tenants/{tenant.id}/schema",
        headers=admin_headers,
        json={"request_schema": {"external_id": "order_id"}, "callback_schema": {}},
    )
    assert r.status_code == 200, r.text
    assert r.json()["callback_schema"] is None

    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "succeeded"
    assert tenant_endpoint.bodies()[0]["external_id"] == "MELO-001"


@pytest.mark.asyncio
async def test_claimed_row_is_not_sent_outside_its_lease(db_session, tenant_endpoint, callback_http, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0) == 1

    # a second claim while the first is in flight finds nothing due
    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0 + timedelta(seconds=5)) == 0
    assert await deliver_callback(db_session, cb_id, http=callback_http, now=T0) == "lease_lost"
    assert tenant_endpoint.requests == []


@pytest.mark.asyncio
async def test_enqueue_failure_returns_callback_to_pending(db_session, fake_enqueue):
    cb_id, _ = await _completed_destination(db_session)
    fake_enqueue.fail_for.add(cb_id)

    assert await dispatch_due_callbacks(db_session, fake_enqueue, now=T0) == 0
    cb = await _reload(db_session, cb_id)
    assert cb.status == "pending"
    assert cb.lease_id is None
    assert cb.status_detail.startswith("enqueue failed")


# ---- operator endpoints ----

@pytest.mark.asyncio
async def test_send_now_is_single_unrecorded_attempt(client, db_session, tenant_endpoint, admin_headers):
    cb_id, dest_id = await _completed_destination(db_session)
    tenant_endpoint.responses = [httpx.Response(500, json={"error": "down"})]

    r = await client.post(f"/v1/admin/destinations/{dest_id}/callback", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json() == {
        "success": False,
        "status_code": 500,
        "message": "Callback failed with status 500",
        "response": {"error": "down"},
    }

    r = await client.post(f"/v1/admin/destinations/{dest_id}/callback", headers=admin_headers)
    assert r.json()["success"] is True
    assert r.json()["message"] == "Callback sent successfully"

    assert len(tenant_endpoint.requests) == 2
    count = (await db_session.execute(select(func.count()).select_from(CallbackAttempt))).scalar_one()
    assert count == 0
    assert (await _reload(db_session, cb_id)).attempts == 0


@pytest.mark.asyncio
async def test_send_now_surfaces_configuration_errors(client, db_session, admin_headers):
    _, dest_id = await _completed_destination(db_session, callback_url=None)

    r = await client.post(f"/v1/admin/destinations/{dest_id}/callback", headers=admin_headers)
    assert r.status_code == 422
    assert r.json()["code"] == "configuration_error"

    r = await client.post("/v1/admin/destinations/dst_unknown/callback", headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_test_callback_posts_fixed_payload(client, tenant_endpoint, admin_headers):
    r = await client.post(
        "/v1/admin/callbacks/test",
        headers=admin_headers,
        json={"url": "https://erp.melo.test/test", "api_key": "k-1"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True
    assert r.json()["message"] == "Test callback sent successfully"

    req = tenant_endpoint.requests[0]
    assert req.headers["Authorization"] == "Bearer k-1"
    assert tenant_endpoint.bodies()[0]["external_id"] == TEST_EXTERNAL_ID


@pytest.mark.asyncio
async def test_callback_admin_requires_internal_key(client):
    r = await client.get("/v1/admin/callbacks")
    assert r.status_code == 403

    r = await client.post("/v1/admin/callbacks/test", headers={"X-Internal-Admin-Key": "wrong"}, json={"url": "https://x.test"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_list_attempts_and_requeue_dead_letter(client, db_session, tenant_endpoint, callback_http, fake_enqueue, admin_headers):
    cb_id, _ = await _completed_destination(db_session)
    tenant_endpoint.responses = [httpx.Response(502) for _ in range(5)]
    outcome, _, _ = await _run_until_final(db_session, cb_id, callback_http, fake_enqueue, start=T0)
    assert outcome == "dead_lettered"

    r = await client.get("/v1/admin/callbacks", headers=admin_headers, params={"status": "dead_lettered"})
    assert [c["id"] for c in r.json()] == [cb_id]

    r = await client.get(f"/v1/admin/callbacks/{cb_id}/attempts", headers=admin_headers)
    assert [a["attempt_number"] for a in r.json()] == [1, 2, 3, 4, 5]
    assert r.json()[0]["request"]["order_id"] == "MELO-001"

    r = await client.post(f"/v1/admin/callbacks/{cb_id}/requeue", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending"
    assert r.json()["attempts"] == 0
    assert r.json()["dead_lettered_at"] is None

    r = await client.post(f"/v1/admin/callbacks/{cb_id}/requeue", headers=admin_headers)
    assert r.status_code == 409

    r = await client.post("/v1/admin/callbacks/cbk_unknown/requeue", headers=admin_headers)
    assert r.status_code == 404
