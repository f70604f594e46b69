"""fulfillment tables

Revision ID: 0001_fulfillment_init
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_fulfillment_init"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32)),
        sa.Column("loyalty_points", sa.Integer, server_default="0", nullable=False),
        sa.Column("total_successful_orders", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "couriers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("phone", sa.String(length=32)),
        sa.Column("vehicle_type", sa.String(length=32)),
        sa.Column("status", sa.String(length=32), server_default="offline", nullable=False),  # available/busy/offline
        sa.Column("rating", sa.Numeric(3, 2), server_default="5.0"),
        sa.Column("total_deliveries", sa.Integer, server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_couriers_status", "couriers", ["status"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("customer_name", sa.String(length=100), nullable=False),
        sa.Column("customer_email", sa.String(length=255)),
        sa.Column("customer_phone", sa.String(length=32)),
        sa.Column("notes", sa.Text()),
        sa.Column("status", sa.String(length=32), server_default="pending", nullable=False),
        sa.Column("payment_status", sa.String(length=32), server_default="pending", nullable=False),
        sa.Column("payment_method", sa.String(length=50), server_default="cash", nullable=False),
        sa.Column("provider_payment_id", sa.String(length=100)),
        sa.Column("subtotal", sa.Numeric(12, 2), server_default="0"),
        sa.Column("discount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("delivery_fee", sa.Numeric(12, 2), server_default="0"),
        sa.Column("final_amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("delivery_method", sa.String(length=32), server_default="takeaway", nullable=False),
        sa.Column("delivery_address", sa.Text()),
        sa.Column("delivery_lat", sa.Float()),
        sa.Column("delivery_lng", sa.Float()),
        sa.Column("geocode_status", sa.String(length=32), server_default="pending", nullable=False),
        sa.Column("geocode_attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("geocode_error", sa.Text()),
        sa.Column("geocode_raw", sa.Text()),
        sa.Column("geocoded_at", sa.DateTime()),
        sa.Column("courier_id", sa.Integer, sa.ForeignKey("couriers.id", ondelete="SET NULL")),
        sa.Column("departure_photo_url", sa.Text()),
        sa.Column("arrival_photo_url", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.Column("assigned_at", sa.DateTime()),
        sa.Column("pickup_time", sa.DateTime()),
        sa.Column("delivery_time", sa.DateTime()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("cancelled_at", sa.DateTime()),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_courier_id", "orders", ["courier_id"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(length=64)),
        sa.Column("product_name", sa.String(length=200), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), server_default="0"),
        sa.Column("quantity", sa.Integer, server_default="1"),
        sa.Column("subtotal", sa.Numeric(12, 2), server_default="0"),
        sa.Column("notes", sa.Text()),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "delivery_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_status", sa.String(length=32)),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_delivery_history_order_id", "delivery_history", ["order_id"])

    op.create_table(
        "cod_tracking",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=32), server_default="pending", nullable=False),
        sa.Column("courier_name", sa.String(length=100)),
        sa.Column("courier_phone", sa.String(length=32)),
        sa.Column("tracking_number", sa.String(length=64)),
        sa.Column("notes", sa.Text()),
        sa.Column("admin_notes", sa.Text()),
        sa.Column("confirmed_at", sa.DateTime()),
        sa.Column("packed_at", sa.DateTime()),
        sa.Column("out_for_delivery_at", sa.DateTime()),
        sa.Column("delivered_at", sa.DateTime()),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column("payment_received", sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column("payment_received_at", sa.DateTime()),
        sa.Column("payment_amount", sa.Numeric(12, 2)),
        sa.Column("payment_notes", sa.Text()),
        sa.Column("receiver_name", sa.String(length=100)),
        sa.Column("receiver_relation", sa.String(length=50)),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_cod_tracking_order_id", "cod_tracking", ["order_id"], unique=True)

    op.create_table(
        "cod_status_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_cod_status_history_order_id", "cod_status_history", ["order_id"])

    op.create_table(
        "courier_locations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("courier_id", sa.Integer, sa.ForeignKey("couriers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy", sa.Float()),
        sa.Column("speed", sa.Float()),
        sa.Column("updated_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_courier_locations_courier_time", "courier_locations", ["courier_id", "updated_at"])

    op.create_table(
        "geocode_jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=32), server_default="pending", nullable=False),  # pending/processing/done/failed
        sa.Column("attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("next_attempt_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_geocode_jobs_order_id", "geocode_jobs", ["order_id"])
    op.create_index("ix_geocode_jobs_status", "geocode_jobs", ["status"])
    op.create_index("ix_geocode_jobs_created_at", "geocode_jobs", ["created_at"])

    op.create_table(
        "webhook_receipts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("provider_status", sa.String(length=32), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=100)),
        sa.Column("amount", sa.Numeric(12, 2)),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.UniqueConstraint("external_id", "provider_status", name="uq_webhook_receipt"),
    )

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("points", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
        sa.UniqueConstraint("order_id", "reason", name="uq_loyalty_order_reason"),
    )
    op.create_index("ix_loyalty_transactions_user_id", "loyalty_transactions", ["user_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.Text()),
        sa.Column("is_read", sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "admin_notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="SET NULL")),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_admin_notifications_order_id", "admin_notifications", ["order_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=64)),
        sa.Column("level", sa.String(length=16), server_default="info", nullable=False),  # info/warning/security
        sa.Column("order_ref", sa.String(length=32)),
        sa.Column("meta", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=NOW, nullable=False),
    )
    op.create_index("ix_audit_logs_day_actor", "audit_logs", ["day", "actor"])
    op.create_index("ix_audit_logs_order_ref", "audit_logs", ["order_ref"])


def downgrade():
    for table in (
        "audit_logs", "admin_notifications", "notifications", "loyalty_transactions", "webhook_receipts",
        "geocode_jobs", "courier_locations", "cod_status_history", "cod_tracking", "delivery_history",
        "order_items", "orders", "couriers", "users",
    ):
        op.drop_table(table)
