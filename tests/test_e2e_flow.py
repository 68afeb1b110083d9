import pytest
from sqlalchemy import select

from lastmile.models.outbox import OutboxEvent
from lastmile.services.callback_queue import dispatch_due_callbacks
from lastmile.services.callbacks import deliver_callback
from lastmile.services.events import process_outbox_event
from lastmile.services.outbox_dispatcher import dispatch_outbox

from fixtures_seed import CALLBACK_API_KEY, CALLBACK_URL, MELO_CALLBACK_SCHEMA, MELO_REQUEST_SCHEMA, melo_destination


@pytest.mark.asyncio
async def test_e2e_onboard_submit_assign_deliver_and_call_back(
    client, db_session, admin_headers, tenant_endpoint, callback_http, fake_enqueue
):
    # 1) operator onboards a tenant, a vehicle and a driver
    r = await client.post(
        "/v1/admin/tenants",
        headers=admin_headers,
        json={
            "name": "Melo Foods",
            "callback_url": CALLBACK_URL,
            "callback_api_key": CALLBACK_API_KEY,
            "request_schema": MELO_REQUEST_SCHEMA,
            "callback_schema": MELO_CALLBACK_SCHEMA,
        },
    )
    assert r.status_code == 201, r.text
    tenant_headers = {"X-API-Key": r.json()["api_key"]}

    r = await client.post("/v1/admin/vehicles", headers=admin_headers, json={"license_plate": "KXA-101"})
    assert r.status_code == 201, r.text
    vehicle_id = r.json()["id"]

    r = await client.post("/v1/admin/drivers", headers=admin_headers, json={"name": "Andreas", "vehicle_id": vehicle_id})
    assert r.status_code == 201, r.text
    driver_id = r.json()["id"]
    driver_headers = {"Authorization": f"Bearer {r.json()['token']}"}

    # 2) tenant submits two destinations in its own shape
    r = await client.post(
        "/v1/delivery-requests",
        headers=tenant_headers,
        json={
            "destinations": [
                melo_destination("MELO-001", lines=[{"sku": "SKU-1", "qty": 3}]),
                melo_destination("MELO-002"),
            ]
        },
    )
    assert r.status_code == 201, r.text
    dr_id = r.json()["id"]
    first_id, second_id = (d["id"] for d in r.json()["destinations"])

    # 3) operator assigns the trip
    r = await client.post(
        "/v1/admin/trips/assign", headers=admin_headers, json={"delivery_request_id": dr_id, "driver_id": driver_id}
    )
    assert r.status_code == 201, r.text
    trip_id = r.json()["id"]
    assert r.json()["vehicle_id"] == vehicle_id

    r = await client.get(f"/v1/delivery-requests/{dr_id}", headers=tenant_headers)
    assert r.json()["status"] == "accepted"
    assert r.json()["trip_id"] == trip_id

    # 4) driver works the trip
    trip_url = f"/v1/driver/trips/{trip_id}"
    r = await client.post(f"{trip_url}/start", headers=driver_headers, json={})
    assert r.status_code == 200, r.text

    r = await client.post(f"{trip_url}/destinations/{first_id}/arrive", headers=driver_headers, json={})
    assert r.status_code == 200, r.text
    r = await client.post(
        f"{trip_url}/destinations/{first_id}/complete",
        headers=driver_headers,
        json={
            "recipient_name": "Eleni",
            "items": [{"order_item_id": "SKU-1", "quantity_delivered": 2, "reason": "damaged_in_transit"}],
        },
    )
    assert r.status_code == 200, r.text

    events = (await db_session.execute(select(OutboxEvent))).scalars().all()
    assert [(e.event_type, e.payload["external_id"], e.payload["status"]) for e in events] == [
        ("destination.completed", "MELO-001", "completed")
    ]

    r = await client.get(f"/v1/delivery-requests/{dr_id}", headers=tenant_headers)
    assert r.json()["status"] == "in_progress"

    r = await client.post(f"{trip_url}/complete", headers=driver_headers, json={"total_km": 20})
    assert r.status_code == 409
    assert r.json()["message"] == "Cannot complete trip - 1 destinations not completed"

    r = await client.post(
        f"{trip_url}/destinations/{second_id}/fail",
        headers=driver_headers,
        json={"reason": "not_home", "notes": "no answer at door"},
    )
    assert r.status_code == 200, r.text

    r = await client.get(f"/v1/delivery-requests/{dr_id}", headers=tenant_headers)
    assert r.json()["status"] == "completed"

    r = await client.post(f"{trip_url}/complete", headers=driver_headers, json={"total_km": 23.4})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"

    # 5) background pipeline: outbox -> callback rows -> tenant endpoint
    assert await dispatch_outbox(db_session, fake_enqueue) == 3
    for _, (outbox_id, lease_id), _ in fake_enqueue.calls:
        assert await process_outbox_event(db_session, outbox_id, lease_id) is True

    fake_enqueue.calls.clear()
    assert await dispatch_due_callbacks(db_session, fake_enqueue) == 2
    for _, (callback_id, lease_id), _ in fake_enqueue.calls:
        assert await deliver_callback(db_session, callback_id, lease_id, http=callback_http) == "succeeded"
        await db_session.commit()

    bodies = {b["order_id"]: b for b in tenant_endpoint.bodies()}
    assert set(bodies) == {"MELO-001", "MELO-002"}

    delivered = bodies["MELO-001"]
    assert delivered["delivery_status"] == "completed"
    assert delivered["received_by"] == "Eleni"
    assert "delivered_at" in delivered
    assert delivered["lines"] == [{"sku": "SKU-1", "qty_delivered": 2, "shortfall_reason": "damaged_in_transit"}]

    failed = bodies["MELO-002"]
    assert failed["delivery_status"] == "failed"
    assert failed["driver_notes"] == "no answer at door"

    assert all(req.headers["Authorization"] == f"Bearer {CALLBACK_API_KEY}" for req in tenant_endpoint.requests)
