from datetime import date, datetime

from sqlalchemy import Date, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lastmile.core.ids import gen_id
from lastmile.models.base import Base, AuditMixin, TZDateTime, utcnow
from lastmile.models.enums import DeliveryRequestStatus, DestinationStatus


class DeliveryRequest(AuditMixin, Base):
    """
    One fulfillment order from a tenant. Owns its destinations (cascade).
    Status rolls up from destinations, see services/transitions.py.
    """
    __tablename__ = "delivery_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("dr"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=DeliveryRequestStatus.PENDING.value)

    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    total_km: Mapped[float | None] = mapped_column(Float, nullable=True)   # planned
    actual_km: Mapped[float | None] = mapped_column(Float, nullable=True)  # reported at trip completion

    # overrides tenant.callback_url for this request's callbacks
    callback_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    destinations: Mapped[list["Destination"]] = relationship(
        back_populates="delivery_request",
        cascade="all, delete-orphan",
        order_by="Destination.sequence_order",
        lazy="selectin",
    )
    trips: Mapped[list["Trip"]] = relationship(back_populates="delivery_request", lazy="selectin")  # noqa: F821

    @property
    def active_trip(self):
        for t in self.trips:
            if t.status != "cancelled":
                return t
        return None


class Destination(AuditMixin, Base):
    __tablename__ = "destinations"
    __table_args__ = (
        Index("ix_destinations_tenant_external", "tenant_id", "external_id"),
        Index("ix_destinations_request_sequence", "delivery_request_id", "sequence_order"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("dst"))
    delivery_request_id: Mapped[str] = mapped_column(
        String, ForeignKey("delivery_requests.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False)

    # tenant ERP id, unique per tenant among live requests; correlates callbacks
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    address: Mapped[str] = mapped_column(String(500), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=DestinationStatus.PENDING.value, index=True)

    arrived_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    arrival_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    arrival_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    # completion metadata (completed_at is also set on failure)
    completed_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    photo_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    failure_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    delivery_request: Mapped[DeliveryRequest] = relationship(back_populates="destinations")
    items: Mapped[list["DestinationItem"]] = relationship(
        back_populates="destination",
        cascade="all, delete-orphan",
        order_by="DestinationItem.order_item_id",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return DestinationStatus(self.status).is_terminal


class DestinationItem(Base):
    __tablename__ = "destination_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("itm"))
    destination_id: Mapped[str] = mapped_column(
        String, ForeignKey("destinations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    order_item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity_ordered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    delivery_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    destination: Mapped[Destination] = relationship(back_populates="items")
