from datetime import date, datetime
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_DESTINATIONS = 25


# ---- inbound (validated after schema transformation) ----

class DestinationItemIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    order_item_id: str = Field(min_length=1, max_length=100)
    name: str | None = Field(default=None, max_length=255)
    quantity_ordered: int = Field(ge=0)


class DestinationIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    external_id: str = Field(min_length=1, max_length=100)
    address: str = Field(min_length=1, max_length=500)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    contact_name: str | None = Field(default=None, max_length=100)
    contact_phone: str | None = Field(default=None, max_length=20)
    notes: str | None = Field(default=None, max_length=500)
    items: list[DestinationItemIn] | None = None


class DeliveryRequestOptions(BaseModel):
    callback_url: str | None = Field(default=None, max_length=500)
    scheduled_date: date | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("callback_url")
    @classmethod
    def _http_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("must be an http(s) URL")
        return v

    @field_validator("scheduled_date")
    @classmethod
    def _not_in_past(cls, v: date | None) -> date | None:
        if v is not None and v < date.today():
            raise ValueError("must be today or later")
        return v


# ---- outbound ----

class DestinationItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_item_id: str
    name: str | None
    quantity_ordered: int
    quantity_delivered: int
    delivery_reason: str | None
    notes: str | None


class DestinationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: str
    sequence_order: int
    address: str
    lat: float
    lng: float
    contact_name: str | None
    contact_phone: str | None
    notes: str | None
    status: str
    arrived_at: datetime | None
    completed_at: datetime | None
    recipient_name: str | None
    signature_ref: str | None
    photo_ref: str | None
    failure_reason: str | None
    failure_notes: str | None
    items: list[DestinationItemOut] = Field(default_factory=list)


class DeliveryRequestOut(BaseModel):
    id: str
    tenant_id: str
    status: str
    scheduled_date: date | None
    total_km: float | None
    actual_km: float | None
    callback_url: str | None
    notes: str | None
    requested_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    trip_id: str | None
    destinations: list[DestinationOut]
