"""
Per-tenant payload mapping between an ERP's JSON shape and canonical destination fields.

Request maps: canonical field -> tenant path, dot notation for nesting ("coordinates.latitude").
Callback maps: canonical field -> tenant key, flat ("order_id").

Item sub-fields are keyed "items.<field>" in both maps and are resolved relative to each item.
Missing request fields come from DEFAULT_REQUEST_SCHEMA. A callback map replaces
DEFAULT_CALLBACK_SCHEMA as a whole: fields it does not mention are not sent.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from lastmile.core.errors import ValidationError


class InboundField(str, Enum):
    EXTERNAL_ID = "external_id"
    ADDRESS = "address"
    LAT = "lat"
    LNG = "lng"
    CONTACT_NAME = "contact_name"
    CONTACT_PHONE = "contact_phone"
    NOTES = "notes"

    ITEMS = "items"
    ITEM_ORDER_ITEM_ID = "items.order_item_id"
    ITEM_NAME = "items.name"
    ITEM_QUANTITY_ORDERED = "items.quantity_ordered"

    @property
    def is_item_field(self) -> bool:
        return self.value.startswith("items.")


class OutboundField(str, Enum):
    EXTERNAL_ID = "external_id"
    STATUS = "status"
    COMPLETED_AT = "completed_at"
    DELIVERED_AT = "delivered_at"
    RECIPIENT_NAME = "recipient_name"
    NOTES = "notes"
    FAILURE_REASON = "failure_reason"

    ITEMS = "items"
    ITEM_ORDER_ITEM_ID = "items.order_item_id"
    ITEM_QUANTITY_DELIVERED = "items.quantity_delivered"
    ITEM_REASON = "items.reason"
    ITEM_NOTES = "items.notes"

    @property
    def is_item_field(self) -> bool:
        return self.value.startswith("items.")


DESTINATION_FIELDS: tuple[InboundField, ...] = (
    InboundField.EXTERNAL_ID,
    InboundField.ADDRESS,
    InboundField.LAT,
    InboundField.LNG,
    InboundField.CONTACT_NAME,
    InboundField.CONTACT_PHONE,
    InboundField.NOTES,
)

REQUIRED_DESTINATION_FIELDS: tuple[str, ...] = ("external_id", "address", "lat", "lng")
REQUIRED_ITEM_FIELDS: tuple[str, ...] = ("order_item_id", "quantity_ordered")

DEFAULT_REQUEST_SCHEMA: dict[str, str] = {
    "external_id": "external_id",
    "address": "address",
    "lat": "lat",
    "lng": "lng",
    "contact_name": "contact_name",
    "contact_phone": "contact_phone",
    "notes": "notes",
    "items": "items",
    "items.order_item_id": "order_item_id",
    "items.name": "name",
    "items.quantity_ordered": "quantity_ordered",
}

DEFAULT_CALLBACK_SCHEMA: dict[str, str] = {
    "external_id": "external_id",
    "status": "status",
    "completed_at": "completed_at",
    "recipient_name": "recipient_name",
    "notes": "notes",
    "items": "items",
    "items.order_item_id": "order_item_id",
    "items.quantity_delivered": "quantity_delivered",
    "items.reason": "reason",
    "items.notes": "notes",
}


# ---- paths ----

@dataclass(frozen=True)
class Direct:
    key: str


@dataclass(frozen=True)
class Nested:
    segments: tuple[str, ...]


FieldPath = Direct | Nested


def parse_path(expr: str) -> FieldPath:
    if not isinstance(expr, str) or not expr.strip():
        raise ValueError("field path must be a non-empty string")
    segments = tuple(s.strip() for s in expr.split("."))
    if any(not s for s in segments):
        raise ValueError(f"invalid field path: {expr!r}")
    if len(segments) == 1:
        return Direct(segments[0])
    return Nested(segments)


def resolve_path(data: Any, path: FieldPath) -> Any:
    """Walk `data` along `path`. Any missing step yields None."""
    segments = (path.key,) if isinstance(path, Direct) else path.segments
    current = data
    for seg in segments:
        if isinstance(current, Mapping):
            if seg not in current:
                return None
            current = current[seg]
        elif isinstance(current, list) and seg.isdigit():
            idx = int(seg)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


# ---- compiled maps ----

@dataclass(frozen=True)
class RequestMapping:
    paths: dict[InboundField, FieldPath]

    @classmethod
    def from_config(cls, request_schema: Mapping[str, str] | None) -> "RequestMapping":
        merged = dict(DEFAULT_REQUEST_SCHEMA)
        for name, expr in (request_schema or {}).items():
            if name in DEFAULT_REQUEST_SCHEMA and expr:
                merged[name] = expr
        return cls(paths={InboundField(name): parse_path(expr) for name, expr in merged.items()})

    def path(self, field: InboundField) -> FieldPath:
        return self.paths[field]


@dataclass(frozen=True)
class CallbackMapping:
    keys: dict[OutboundField, str]

    @classmethod
    def from_config(cls, callback_schema: Mapping[str, str] | None) -> "CallbackMapping":
        # an empty map is treated as not configured
        source = callback_schema or DEFAULT_CALLBACK_SCHEMA
        keys: dict[OutboundField, str] = {}
        for name, key in source.items():
            try:
                field = OutboundField(name)
            except ValueError:
                continue
            if key:
                keys[field] = key
        return cls(keys=keys)

    def item_key(self, field: OutboundField) -> str:
        # a mapped items list falls back to default sub-keys
        return self.keys.get(field) or DEFAULT_CALLBACK_SCHEMA[field.value]


# ---- inbound ----

def transform_incoming(raw: Mapping[str, Any], request_schema: Mapping[str, str] | None) -> dict[str, Any]:
    """
    Map one tenant destination object to canonical fields.
    Never raises on missing data; absent fields come back as None for validate_required_fields.
    """
    mapping = RequestMapping.from_config(request_schema)
    out: dict[str, Any] = {f.value: resolve_path(raw, mapping.path(f)) for f in DESTINATION_FIELDS}
    out["items"] = transform_incoming_items(raw, mapping)
    return out


def transform_incoming_items(raw: Mapping[str, Any], mapping: RequestMapping) -> list[dict[str, Any]] | None:
    items = resolve_path(raw, mapping.path(InboundField.ITEMS))
    if not items or not isinstance(items, list):
        return None

    return [
        {
            "order_item_id": resolve_path(item, mapping.path(InboundField.ITEM_ORDER_ITEM_ID)),
            "name": resolve_path(item, mapping.path(InboundField.ITEM_NAME)),
            "quantity_ordered": resolve_path(item, mapping.path(InboundField.ITEM_QUANTITY_ORDERED)),
        }
        for item in items
    ]


# ---- outbound ----

def transform_outgoing(canonical: Mapping[str, Any], callback_schema: Mapping[str, str] | None) -> dict[str, Any]:
    """
    Build the tenant-shaped callback body from canonical values.
    Unmapped fields and None values are omitted.
    Item reason/notes are only sent for items delivered short.
    """
    mapping = CallbackMapping.from_config(callback_schema)
    out: dict[str, Any] = {}

    for field, key in mapping.keys.items():
        if field is OutboundField.ITEMS or field.is_item_field:
            continue
        value = canonical.get(field.value)
        if value is not None:
            out[key] = value

    items = canonical.get("items")
    items_key = mapping.keys.get(OutboundField.ITEMS)
    if items and items_key:
        out[items_key] = [_outgoing_item(item, mapping) for item in items]

    return out


def _outgoing_item(item: Mapping[str, Any], mapping: CallbackMapping) -> dict[str, Any]:
    data = {
        mapping.item_key(OutboundField.ITEM_ORDER_ITEM_ID): item.get("order_item_id"),
        mapping.item_key(OutboundField.ITEM_QUANTITY_DELIVERED): item.get("quantity_delivered"),
    }
    ordered = item.get("quantity_ordered")
    delivered = item.get("quantity_delivered")
    if ordered is not None and delivered is not None and delivered < ordered:
        if item.get("reason"):
            data[mapping.item_key(OutboundField.ITEM_REASON)] = item["reason"]
        if item.get("notes"):
            data[mapping.item_key(OutboundField.ITEM_NOTES)] = item["notes"]
    return data


# ---- validation ----

def is_missing(value: Any) -> bool:
    # 0 and False are real values
    return value is None or value == ""


def validate_required_fields(data: Mapping[str, Any], required: Iterable[str], *, prefix: str = "") -> None:
    missing = [name for name in required if is_missing(data.get(name))]
    if missing:
        raise ValidationError.missing_fields(missing, prefix=prefix)


def validate_schema_config(
    request_schema: Mapping[str, Any] | None, callback_schema: Mapping[str, Any] | None
) -> None:
    """Operator-side check before a tenant schema is stored."""
    details: list[dict[str, Any]] = []

    for name, expr in (request_schema or {}).items():
        if name not in DEFAULT_REQUEST_SCHEMA:
            details.append({"field": f"request_schema.{name}", "message": "unknown canonical field"})
            continue
        try:
            parse_path(expr)
        except ValueError as e:
            details.append({"field": f"request_schema.{name}", "message": str(e)})

    for name, key in (callback_schema or {}).items():
        if name not in {f.value for f in OutboundField}:
            details.append({"field": f"callback_schema.{name}", "message": "unknown canonical field"})
        elif not isinstance(key, str) or not key.strip():
            details.append({"field": f"callback_schema.{name}", "message": "key must be a non-empty string"})

    if details:
        raise ValidationError("Invalid tenant schema", details=details)
