from pydantic import BaseModel, Field


class TenantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    callback_url: str | None = Field(default=None, max_length=500)
    callback_api_key: str | None = None
    request_schema: dict[str, str] | None = None
    callback_schema: dict[str, str] | None = None


class TenantCreated(BaseModel):
    id: str
    name: str
    api_key: str  # shown once


class CallbackConfigUpdate(BaseModel):
    callback_url: str | None = Field(default=None, max_length=500)
    # None keeps the stored credential; "" clears it
    callback_api_key: str | None = None


class TenantOut(BaseModel):
    id: str
    name: str
    is_active: bool
    callback_url: str | None
    has_callback_api_key: bool
    request_schema: dict | None
    callback_schema: dict | None


class TenantSchemaUpdate(BaseModel):
    request_schema: dict[str, str] = Field(default_factory=dict)
    callback_schema: dict[str, str] | None = None


class VehicleCreate(BaseModel):
    license_plate: str = Field(min_length=1, max_length=40)
    make: str | None = Field(default=None, max_length=80)
    model: str | None = Field(default=None, max_length=80)


class VehicleOut(BaseModel):
    id: str
    license_plate: str
    make: str | None
    model: str | None
    app_tracked_km: float
    is_active: bool


class DriverCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str | None = Field(default=None, max_length=40)
    vehicle_id: str | None = None


class DriverCreated(BaseModel):
    id: str
    name: str
    vehicle_id: str | None
    token: str  # shown once


class TripAssign(BaseModel):
    delivery_request_id: str
    driver_id: str
    vehicle_id: str | None = None
