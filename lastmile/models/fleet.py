from sqlalchemy import Boolean, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lastmile.core.ids import gen_id
from lastmile.models.base import Base, AuditMixin


class Vehicle(AuditMixin, Base):
    __tablename__ = "vehicles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("veh"))
    license_plate: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    make: Mapped[str | None] = mapped_column(String(80), nullable=True)
    model: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # km reported by drivers through completed trips
    app_tracked_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def add_kilometers(self, km: float) -> None:
        self.app_tracked_km = round((self.app_tracked_km or 0.0) + km, 2)


class Driver(AuditMixin, Base):
    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("drv"))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # default vehicle, used by auto-assignment
    vehicle_id: Mapped[str | None] = mapped_column(String, ForeignKey("vehicles.id"), nullable=True)

    # Bearer token (hashed)
    token_prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    vehicle = relationship("Vehicle", lazy="selectin")
