from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Text, JSON, Enum, ForeignKey,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
from booking_engine.states import BookingStatus, DeliveryStatus, ReportStatus, FoodItemStatus

Base = declarative_base()


def utcnow() -> datetime:
    # Naive UTC so values compare the same way on every backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class FoodItem(Base):
    __tablename__ = "food_items"

    id = Column(String, primary_key=True, index=True)
    donor_id = Column(String, index=True, nullable=True)
    campaign_id = Column(String, index=True, nullable=True)
    title = Column(String, nullable=True)
    qty_total = Column(Integer, nullable=False)
    qty_reserved = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)
    status = Column(_enum(FoodItemStatus), default=FoodItemStatus.AVAILABLE, nullable=False)
    version = Column(Integer, nullable=False, default=1)  # optimistic lock
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("qty_reserved >= 0", name="ck_food_items_reserved_non_negative"),
        CheckConstraint("qty_reserved <= qty_total", name="ck_food_items_reserved_le_total"),
    )

    @property
    def qty_available(self) -> int:
        return max(self.qty_total - self.qty_reserved, 0)


class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"

    token = Column(String, primary_key=True, index=True)
    food_item_id = Column(String, ForeignKey("food_items.id"), index=True, nullable=False)
    qty = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    released_at = Column(DateTime, nullable=True)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, index=True)
    food_item_id = Column(String, ForeignKey("food_items.id"), index=True, nullable=False)
    receiver_id = Column(String, index=True, nullable=False)
    qty = Column(Integer, nullable=False)
    status = Column(_enum(BookingStatus), default=BookingStatus.PENDING, index=True, nullable=False)
    reservation_token = Column(String, ForeignKey("inventory_reservations.token"), nullable=False)
    method = Column(String, default="pickup", nullable=False)
    pickup_point = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    decision_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(String, primary_key=True, index=True)
    booking_id = Column(String, ForeignKey("bookings.id"), unique=True, nullable=False)
    qty = Column(Integer, nullable=False)
    shipper_id = Column(String, index=True, nullable=True)
    pickup_ref = Column(String, nullable=True)
    dropoff_ref = Column(String, nullable=True)
    status = Column(_enum(DeliveryStatus), default=DeliveryStatus.PENDING, index=True, nullable=False)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    assigned_at = Column(DateTime, nullable=True)
    picking_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CampaignCredit(Base):
    """Dedupe record: one meal-counter credit per delivery."""
    __tablename__ = "campaign_credits"

    delivery_id = Column(String, ForeignKey("deliveries.id"), primary_key=True)
    campaign_id = Column(String, index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    credited = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    credited_at = Column(DateTime, nullable=True)


class DeliveryReview(Base):
    __tablename__ = "delivery_reviews"

    delivery_id = Column(String, ForeignKey("deliveries.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_delivery_reviews_rating"),
    )


class Report(Base):
    __tablename__ = "delivery_reports"

    id = Column(String, primary_key=True, index=True)
    delivery_id = Column(String, ForeignKey("deliveries.id"), index=True, nullable=False)
    reporter_id = Column(String, index=True, nullable=False)
    reason = Column(String, nullable=False)
    details = Column(Text, nullable=True)
    images = Column(JSON, nullable=False, default=list)
    status = Column(_enum(ReportStatus), default=ReportStatus.OPEN, index=True, nullable=False)
    admin_id = Column(String, nullable=True)
    admin_reply = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
