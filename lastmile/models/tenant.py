from sqlalchemy import Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lastmile.core.ids import gen_id
from lastmile.models.base import Base, AuditMixin, JSONType


class Tenant(AuditMixin, Base):
    """
    A client business integrating through its own ERP.
    Owns one payload schema and one callback configuration.
    """
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("tnt"))
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # X-API-Key (hashed; plain key is returned once at creation)
    api_key_prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    api_key_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    callback_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Fernet token, see core/crypto.py
    callback_api_key_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    payload_schema = relationship("TenantSchema", back_populates="tenant", uselist=False, lazy="selectin")


class TenantSchema(AuditMixin, Base):
    __tablename__ = "tenant_schemas"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sch"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False, unique=True)

    # canonical field -> tenant path (dot notation), e.g. {"lat": "coordinates.latitude"}
    request_schema: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    # canonical field -> tenant key (flat), e.g. {"external_id": "order_id"}
    callback_schema: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    tenant = relationship("Tenant", back_populates="payload_schema")
