"""booking, delivery and report tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _status(name, *values):
    return sa.Enum(*values, name=name, native_enum=False, length=20)


def upgrade() -> None:
    op.create_table(
        "food_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("donor_id", sa.String(), nullable=True),
        sa.Column("campaign_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("qty_total", sa.Integer(), nullable=False),
        sa.Column("qty_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("status", _status("fooditemstatus", "available", "exhausted", "expired"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_food_items_reserved_non_negative"),
        sa.CheckConstraint("qty_reserved <= qty_total", name="ck_food_items_reserved_le_total"),
    )
    op.create_index("ix_food_items_id", "food_items", ["id"])
    op.create_index("ix_food_items_donor_id", "food_items", ["donor_id"])
    op.create_index("ix_food_items_campaign_id", "food_items", ["campaign_id"])

    op.create_table(
        "inventory_reservations",
        sa.Column("token", sa.String(), primary_key=True),
        sa.Column("food_item_id", sa.String(), sa.ForeignKey("food_items.id"), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("released_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_inventory_reservations_token", "inventory_reservations", ["token"])
    op.create_index("ix_inventory_reservations_food_item_id", "inventory_reservations", ["food_item_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("food_item_id", sa.String(), sa.ForeignKey("food_items.id"), nullable=False),
        sa.Column("receiver_id", sa.String(), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _status("bookingstatus", "pending", "accepted", "completed", "cancelled", "rejected", "expired"),
            nullable=False,
        ),
        sa.Column("reservation_token", sa.String(), sa.ForeignKey("inventory_reservations.token"), nullable=False),
        sa.Column("method", sa.String(), nullable=False, server_default="pickup"),
        sa.Column("pickup_point", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("decision_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_food_item_id", "bookings", ["food_item_id"])
    op.create_index("ix_bookings_receiver_id", "bookings", ["receiver_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])

    op.create_table(
        "deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("shipper_id", sa.String(), nullable=True),
        sa.Column("pickup_ref", sa.String(), nullable=True),
        sa.Column("dropoff_ref", sa.String(), nullable=True),
        sa.Column(
            "status",
            _status("deliverystatus", "pending", "assigned", "picking", "delivered", "cancelled"),
            nullable=False,
        ),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(), nullable=True),
        sa.Column("picking_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_deliveries_id", "deliveries", ["id"])
    op.create_index("ix_deliveries_shipper_id", "deliveries", ["shipper_id"])
    op.create_index("ix_deliveries_status", "deliveries", ["status"])

    op.create_table(
        "campaign_credits",
        sa.Column("delivery_id", sa.String(), sa.ForeignKey("deliveries.id"), primary_key=True),
        sa.Column("campaign_id", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("credited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("credited_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_campaign_credits_campaign_id", "campaign_credits", ["campaign_id"])

    op.create_table(
        "delivery_reviews",
        sa.Column("delivery_id", sa.String(), sa.ForeignKey("deliveries.id"), primary_key=True),
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_delivery_reviews_rating"),
    )

    op.create_table(
        "delivery_reports",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("delivery_id", sa.String(), sa.ForeignKey("deliveries.id"), nullable=False),
        sa.Column("reporter_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _status("reportstatus", "open", "reviewing", "in_progress", "resolved", "rejected", "closed"),
            nullable=False,
        ),
        sa.Column("admin_id", sa.String(), nullable=True),
        sa.Column("admin_reply", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_delivery_reports_id", "delivery_reports", ["id"])
    op.create_index("ix_delivery_reports_delivery_id", "delivery_reports", ["delivery_id"])
    op.create_index("ix_delivery_reports_reporter_id", "delivery_reports", ["reporter_id"])
    op.create_index("ix_delivery_reports_status", "delivery_reports", ["status"])


def downgrade() -> None:
    op.drop_table("delivery_reports")
    op.drop_table("delivery_reviews")
    op.drop_table("campaign_credits")
    op.drop_table("deliveries")
    op.drop_table("bookings")
    op.drop_table("inventory_reservations")
    op.drop_table("food_items")
