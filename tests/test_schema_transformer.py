import pytest

from lastmile.core.errors import ValidationError
from lastmile.services.schema_transformer import (
    DEFAULT_CALLBACK_SCHEMA,
    Direct,
    InboundField,
    Nested,
    RequestMapping,
    parse_path,
    resolve_path,
    transform_incoming,
    transform_outgoing,
    validate_required_fields,
    validate_schema_config,
)


def test_round_trip_through_nested_inbound_and_flat_outbound_maps():
    canonical = transform_incoming({"order": {"id": "X1"}}, {"external_id": "order.id"})
    assert canonical["external_id"] == "X1"

    out = transform_outgoing({"external_id": canonical["external_id"]}, {"external_id": "order_id"})
    assert out == {"order_id": "X1"}


def test_parse_path_distinguishes_direct_and_nested():
    assert parse_path("address") == Direct("address")
    assert parse_path("coordinates.latitude") == Nested(("coordinates", "latitude"))

    with pytest.raises(ValueError):
        parse_path("a..b")
    with pytest.raises(ValueError):
        parse_path("")


def test_resolve_path_missing_intermediate_yields_none():
    data = {"a": {"b": {"c": 7}}, "list": [{"x": 1}]}

    assert resolve_path(data, Nested(("a", "b", "c"))) == 7
    assert resolve_path(data, Nested(("a", "missing", "c"))) is None
    assert resolve_path(data, Nested(("a", "b", "c", "d"))) is None
    assert resolve_path(data, Nested(("list", "0", "x"))) == 1
    assert resolve_path(data, Nested(("list", "5", "x"))) is None
    assert resolve_path(data, Direct("nope")) is None


def test_unmapped_inbound_fields_fall_back_to_default_paths():
    raw = {
        "ref": "A-1",
        "address": "1 Main St",
        "lat": 35.0,
        "lng": 33.0,
        "contact_name": "Maria",
    }
    canonical = transform_incoming(raw, {"external_id": "ref"})

    assert canonical["external_id"] == "A-1"
    assert canonical["address"] == "1 Main St"
    assert canonical["lat"] == 35.0
    assert canonical["contact_name"] == "Maria"
    assert canonical["contact_phone"] is None
    assert canonical["items"] is None


def test_no_schema_uses_identity_like_default():
    mapping = RequestMapping.from_config(None)
    assert mapping.path(InboundField.LAT) == Direct("lat")

    canonical = transform_incoming({"external_id": "E", "address": "x", "lat": 1, "lng": 2}, None)
    assert canonical["external_id"] == "E"
    assert canonical["lng"] == 2


def test_inbound_items_are_mapped_relative_to_each_item():
    raw = {"order_id": "M-1", "lines": [{"sku": "S1", "qty": 2, "title": "Feta"}, {"sku": "S2"}]}
    schema = {
        "external_id": "order_id",
        "items": "lines",
        "items.order_item_id": "sku",
        "items.quantity_ordered": "qty",
        "items.name": "title",
    }

    canonical = transform_incoming(raw, schema)

    assert canonical["items"] == [
        {"order_item_id": "S1", "name": "Feta", "quantity_ordered": 2},
        {"order_item_id": "S2", "name": None, "quantity_ordered": None},
    ]


def test_outgoing_default_shape_and_omits_none():
    canonical = {
        "external_id": "MELO-001",
        "status": "completed",
        "completed_at": "2030-01-01T10:00:00+00:00",
        "recipient_name": None,
        "notes": "left at door",
        "failure_reason": None,
        "items": [],
    }

    out = transform_outgoing(canonical, None)

    assert out == {
        "external_id": "MELO-001",
        "status": "completed",
        "completed_at": "2030-01-01T10:00:00+00:00",
        "notes": "left at door",
    }
    assert set(out) <= set(DEFAULT_CALLBACK_SCHEMA.values())


def test_outgoing_fields_without_mapping_are_omitted():
    canonical = {"external_id": "A", "status": "failed", "notes": "nobody home", "failure_reason": "not_home"}

    out = transform_outgoing(canonical, {"external_id": "id", "failure_reason": "why"})

    assert out == {"id": "A", "why": "not_home"}


def test_outgoing_item_reason_only_for_short_deliveries():
    canonical = {
        "external_id": "A",
        "items": [
            {"order_item_id": "S1", "quantity_ordered": 3, "quantity_delivered": 2, "reason": "damaged_in_transit", "notes": "crushed"},
            {"order_item_id": "S2", "quantity_ordered": 1, "quantity_delivered": 1, "reason": "other", "notes": "ignored"},
        ],
    }
    schema = {
        "external_id": "order_id",
        "items": "lines",
        "items.order_item_id": "sku",
        "items.quantity_delivered": "qty",
    }

    out = transform_outgoing(canonical, schema)

    # reason/notes keys fall back to the default sub-keys
    assert out["lines"] == [
        {"sku": "S1", "qty": 2, "reason": "damaged_in_transit", "notes": "crushed"},
        {"sku": "S2", "qty": 1},
    ]


def test_required_fields_zero_is_present_empty_string_is_missing():
    with pytest.raises(ValidationError) as exc:
        validate_required_fields({"address": "", "lat": 0, "lng": 35.9}, ["address", "lat", "lng"])

    assert [d["field"] for d in exc.value.details] == ["address"]
    assert exc.value.message == "Missing required fields: address"


def test_required_fields_reports_every_missing_field():
    with pytest.raises(ValidationError) as exc:
        validate_required_fields({"lat": None, "flag": False}, ["external_id", "address", "lat", "flag"], prefix="destinations.0.")

    assert [d["field"] for d in exc.value.details] == [
        "destinations.0.external_id",
        "destinations.0.address",
        "destinations.0.lat",
    ]


def test_required_fields_all_present_passes():
    validate_required_fields({"a": 0, "b": False, "c": "x"}, ["a", "b", "c"])


def test_schema_config_rejects_unknown_fields_and_bad_paths():
    with pytest.raises(ValidationError) as exc:
        validate_schema_config(
            {"external_id": "order..id", "colour": "c"},
            {"status": "", "external_id": "order_id"},
        )

    fields = {d["field"] for d in exc.value.details}
    assert fields == {"request_schema.external_id", "request_schema.colour", "callback_schema.status"}
