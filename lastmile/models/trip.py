from datetime import datetime

from sqlalchemy import Float, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lastmile.core.ids import gen_id
from lastmile.models.base import Base, AuditMixin, TZDateTime, utcnow
from lastmile.models.enums import TripStatus


class Trip(AuditMixin, Base):
    """
    One driver's execution of a delivery request.
    References (does not own) the delivery request.
    """
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("trp"))
    delivery_request_id: Mapped[str] = mapped_column(String, ForeignKey("delivery_requests.id"), nullable=False, index=True)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True, index=True)
    vehicle_id: Mapped[str | None] = mapped_column(String, ForeignKey("vehicles.id"), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=TripStatus.NOT_STARTED.value)

    planned_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_km: Mapped[float | None] = mapped_column(Float, nullable=True)

    assigned_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    start_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    delivery_request = relationship("DeliveryRequest", back_populates="trips", lazy="selectin")
    vehicle = relationship("Vehicle", lazy="selectin")
