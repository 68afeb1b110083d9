from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from lastmile.core.ids import gen_id
from lastmile.models.base import Base, JSONType, TZDateTime, utcnow
from lastmile.models.enums import CallbackStatus


class CallbackDelivery(Base):
    """
    One reportable event in flight to a tenant endpoint.
    At most one row per (source_type, source_id, event_type): one delivery sequence per entity.
    """
    __tablename__ = "callback_deliveries"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", "event_type", name="uq_callback_source_event"),
        Index("ix_callback_deliveries_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("cbk"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False, index=True)

    source_type: Mapped[str] = mapped_column(String(50), nullable=False)   # e.g. "destination"
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    # kept for correlation/search; the payload itself is rebuilt on each attempt
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=CallbackStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    next_attempt_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True, default=utcnow)
    last_attempt_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    lease_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow, server_default=func.now())


class CallbackAttempt(Base):
    __tablename__ = "callback_attempts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("att"))
    callback_id: Mapped[str] = mapped_column(String, ForeignKey("callback_deliveries.id"), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(30), nullable=False)  # succeeded/failed
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    request: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)   # payload sent (no credentials)
    response: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    elapsed_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False, default=utcnow)
