from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from lastmile.models.enums import FailureReason, ItemDeliveryReason
from lastmile.schemas.common import Coordinates
from lastmile.schemas.delivery_request import DestinationOut


class StartTripIn(Coordinates):
    pass


class ArriveIn(Coordinates):
    pass


class DeliveredItemIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    order_item_id: str = Field(min_length=1, max_length=100)
    quantity_delivered: int = Field(ge=0)
    quantity_ordered: int | None = Field(default=None, ge=0)
    reason: ItemDeliveryReason | None = None
    notes: str | None = Field(default=None, max_length=500)


class CompleteDestinationIn(BaseModel):
    recipient_name: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=500)
    # base64 (or data: URL)
    signature: str | None = None
    photo: str | None = None
    items: list[DeliveredItemIn] | None = None


class FailDestinationIn(BaseModel):
    # checked in the service so the error lists the allowed values
    reason: str | None = None
    notes: str | None = Field(default=None, max_length=500)


class CompleteTripIn(Coordinates):
    # range checked in the service (ValidationError with field detail)
    total_km: float | None = None


class TripDeliveryRequestOut(BaseModel):
    id: str
    status: str
    notes: str | None
    destinations: list[DestinationOut]


class TripOut(BaseModel):
    id: str
    delivery_request_id: str
    driver_id: str | None
    vehicle_id: str | None
    status: str
    planned_km: float | None
    actual_km: float | None
    assigned_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    delivery_request: TripDeliveryRequestOut | None = None
