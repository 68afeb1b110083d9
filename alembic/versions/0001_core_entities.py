from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_core_entities"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def upgrade():
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("api_key_prefix", sa.String(length=16), nullable=False),
        sa.Column("api_key_hash", sa.Text(), nullable=False, unique=True),
        sa.Column("callback_url", sa.String(length=500), nullable=True),
        sa.Column("callback_api_key_ciphertext", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index("ix_tenants_api_key_prefix", "tenants", ["api_key_prefix"])

    op.create_table(
        "tenant_schemas",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False, unique=True),
        sa.Column("request_schema", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("callback_schema", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_audit_columns(),
    )

    op.create_table(
        "vehicles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("license_plate", sa.String(length=40), nullable=False, unique=True),
        sa.Column("make", sa.String(length=80), nullable=True),
        sa.Column("model", sa.String(length=80), nullable=True),
        sa.Column("app_tracked_km", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )

    op.create_table(
        "drivers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("vehicle_id", sa.String(), sa.ForeignKey("vehicles.id"), nullable=True),
        sa.Column("token_prefix", sa.String(length=16), nullable=False),
        sa.Column("token_hash", sa.Text(), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index("ix_drivers_token_prefix", "drivers", ["token_prefix"])

    op.create_table(
        "delivery_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("total_km", sa.Float(), nullable=True),
        sa.Column("actual_km", sa.Float(), nullable=True),
        sa.Column("callback_url", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_delivery_requests_tenant_id", "delivery_requests", ["tenant_id"])

    op.create_table(
        "destinations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("delivery_request_id", sa.String(), sa.ForeignKey("delivery_requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=False),
        sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("address", sa.String(length=500), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("contact_name", sa.String(length=100), nullable=True),
        sa.Column("contact_phone", sa.String(length=20), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrival_lat", sa.Float(), nullable=True),
        sa.Column("arrival_lng", sa.Float(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recipient_name", sa.String(length=255), nullable=True),
        sa.Column("signature_ref", sa.String(length=500), nullable=True),
        sa.Column("photo_ref", sa.String(length=500), nullable=True),
        sa.Column("failure_reason", sa.String(length=40), nullable=True),
        sa.Column("failure_notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_destinations_tenant_external", "destinations", ["tenant_id", "external_id"])
    op.create_index("ix_destinations_request_sequence", "destinations", ["delivery_request_id", "sequence_order"])
    op.create_index("ix_destinations_status", "destinations", ["status"])

    op.create_table(
        "destination_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("destination_id", sa.String(), sa.ForeignKey("destinations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_item_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("quantity_ordered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_reason", sa.String(length=40), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_destination_items_destination_id", "destination_items", ["destination_id"])

    op.create_table(
        "trips",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("delivery_request_id", sa.String(), sa.ForeignKey("delivery_requests.id"), nullable=False),
        sa.Column("driver_id", sa.String(), sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("vehicle_id", sa.String(), sa.ForeignKey("vehicles.id"), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
        sa.Column("planned_km", sa.Float(), nullable=True),
        sa.Column("actual_km", sa.Float(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_lat", sa.Float(), nullable=True),
        sa.Column("start_lng", sa.Float(), nullable=True),
        sa.Column("end_lat", sa.Float(), nullable=True),
        sa.Column("end_lng", sa.Float(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_trips_delivery_request_id", "trips", ["delivery_request_id"])
    op.create_index("ix_trips_driver_id", "trips", ["driver_id"])


def downgrade():
    op.drop_index("ix_trips_driver_id", table_name="trips")
    op.drop_index("ix_trips_delivery_request_id", table_name="trips")
    op.drop_table("trips")
    op.drop_index("ix_destination_items_destination_id", table_name="destination_items")
    op.drop_table("destination_items")
    op.drop_index("ix_destinations_status", table_name="destinations")
    op.drop_index("ix_destinations_request_sequence", table_name="destinations")
    op.drop_index("ix_destinations_tenant_external", table_name="destinations")
    op.drop_table("destinations")
    op.drop_index("ix_delivery_requests_tenant_id", table_name="delivery_requests")
    op.drop_table("delivery_requests")
    op.drop_index("ix_drivers_token_prefix", table_name="drivers")
    op.drop_table("drivers")
    op.drop_table("vehicles")
    op.drop_table("tenant_schemas")
    op.drop_index("ix_tenants_api_key_prefix", table_name="tenants")
    op.drop_table("tenants")
