"""
Delivery state machine.

    pending -> assigned -> picking -> delivered
    any non-terminal state -> cancelled

``delivered`` and ``cancelled`` are absorbing. Reaching ``delivered`` completes
the booking and records the campaign credit dedupe row; reaching ``cancelled``
cancels the booking, which releases its reservation. Both side effects run in
the same transaction as the status change.
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple
from uuid import uuid4
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from booking_engine import bookings
from booking_engine.errors import InvalidStateTransition, NotFound, ValidationError
from booking_engine.models import Booking, CampaignCredit, Delivery, DeliveryReview, FoodItem, utcnow
from booking_engine.states import (
    DELIVERY_TERMINAL, DELIVERY_TRANSITIONS, BookingStatus, DeliveryStatus,
    compare_and_set, ensure_transition,
)

logger = logging.getLogger(__name__)

ACTIONS = {
    "assign": DeliveryStatus.ASSIGNED,
    "accept": DeliveryStatus.ASSIGNED,
    "start_pickup": DeliveryStatus.PICKING,
    "deliver": DeliveryStatus.DELIVERED,
    "delivered": DeliveryStatus.DELIVERED,
    "cancel": DeliveryStatus.CANCELLED,
}

# Column stamped when a delivery enters each state
STAMPS = {
    DeliveryStatus.ASSIGNED: "assigned_at",
    DeliveryStatus.PICKING: "picking_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.CANCELLED: "cancelled_at",
}

MAX_PAGE_SIZE = 100


async def get(db: AsyncSession, delivery_id: str) -> Delivery:
    result = await db.execute(
        select(Delivery)
        .where(Delivery.id == delivery_id)
        .execution_options(populate_existing=True)
    )
    delivery = result.scalar_one_or_none()
    if delivery is None:
        raise NotFound("delivery", delivery_id)
    return delivery


async def get_by_booking(db: AsyncSession, booking_id: str) -> Optional[Delivery]:
    result = await db.execute(
        select(Delivery)
        .where(Delivery.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create(db: AsyncSession, booking_id: str, now: Optional[datetime] = None) -> Delivery:
    """Open the delivery of an accepted booking. Returns the existing one if already open."""
    booking = await bookings.get(db, booking_id)
    existing = await get_by_booking(db, booking_id)
    if existing is not None:
        return existing
    if booking.status is not BookingStatus.ACCEPTED:
        raise InvalidStateTransition("booking", booking_id, booking.status, "delivery")

    now = now or utcnow()
    delivery = Delivery(
        id=str(uuid4()),
        booking_id=booking_id,
        qty=booking.qty,
        status=DeliveryStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(delivery)
    await db.flush()
    logger.info(f"Delivery {delivery.id} created for booking {booking_id}")
    return delivery


async def _record_credit(db: AsyncSession, delivery: Delivery, now: datetime):
    result = await db.execute(
        select(FoodItem.campaign_id)
        .join(Booking, Booking.food_item_id == FoodItem.id)
        .where(Booking.id == delivery.booking_id)
    )
    campaign_id = result.scalar_one_or_none()
    if not campaign_id:
        logger.info(f"Delivery {delivery.id} has no campaign to credit")
        return
    if await db.get(CampaignCredit, delivery.id) is not None:
        return
    db.add(CampaignCredit(
        delivery_id=delivery.id,
        campaign_id=campaign_id,
        delta=delivery.qty,
        credited=False,
        created_at=now,
    ))
    await db.flush()


async def transition(
    db: AsyncSession,
    delivery_id: str,
    action: str,
    actor_id: Optional[str] = None,
    shipper_id: Optional[str] = None,
    pickup_ref: Optional[str] = None,
    dropoff_ref: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Delivery:
    target = ACTIONS.get(action)
    if target is None:
        raise ValidationError(f"unknown delivery action: {action}")
    now = now or utcnow()
    delivery = await get(db, delivery_id)

    # At-least-once callers may replay the terminal action; that is a no-op
    if delivery.status is target and target in DELIVERY_TERMINAL:
        logger.info(f"Delivery {delivery_id} already {target.value}. Idempotent.")
        return delivery

    ensure_transition(DELIVERY_TRANSITIONS, "delivery", delivery_id, delivery.status, target)

    values = {STAMPS[target]: now}
    if target is DeliveryStatus.ASSIGNED:
        shipper_id = shipper_id or delivery.shipper_id or actor_id
        if not shipper_id:
            raise ValidationError("shipper_id is required to assign a delivery")
        values.update(
            shipper_id=shipper_id,
            pickup_ref=pickup_ref or delivery.pickup_ref,
            dropoff_ref=dropoff_ref or delivery.dropoff_ref,
        )
    elif target is DeliveryStatus.CANCELLED:
        values["cancel_reason"] = reason

    await compare_and_set(db, Delivery, "delivery", delivery_id, delivery.status, target, **values)
    logger.info(f"Delivery {delivery_id} status updated {delivery.status.value} -> {target.value}")
    delivery = await get(db, delivery_id)

    if target is DeliveryStatus.DELIVERED:
        await bookings.complete(db, delivery.booking_id)
        await _record_credit(db, delivery, now)
    elif target is DeliveryStatus.CANCELLED:
        await bookings.cancel(db, delivery.booking_id, actor_id, now=now)

    return delivery


async def apply_campaign_credit(db: AsyncSession, delivery_id: str, client, now: Optional[datetime] = None) -> bool:
    """
    Push the recorded meal credit of a delivered delivery to the campaign service.

    Returns True when this call applied the credit, False when there is nothing
    to credit or it was already applied.
    """
    result = await db.execute(
        select(CampaignCredit)
        .where(CampaignCredit.delivery_id == delivery_id)
        .execution_options(populate_existing=True)
    )
    credit = result.scalar_one_or_none()
    if credit is None:
        return False
    if credit.credited:
        logger.info(f"Campaign credit for delivery {delivery_id} already applied. Skipping.")
        return False

    await client.increment_meal_counter(credit.campaign_id, credit.delta, dedupe_key=delivery_id)

    await db.execute(
        update(CampaignCredit)
        .where(CampaignCredit.delivery_id == delivery_id, CampaignCredit.credited.is_(False))
        .values(credited=True, credited_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Campaign {credit.campaign_id} credited {credit.delta} meals for delivery {delivery_id}")
    return True


async def review(
    db: AsyncSession,
    delivery_id: str,
    user_id: str,
    rating: int,
    comment: Optional[str] = None,
) -> DeliveryReview:
    if not user_id:
        raise ValidationError("user_id is required")
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be between 1 and 5")

    delivery = await get(db, delivery_id)
    if delivery.status not in DELIVERY_TERMINAL:
        raise ValidationError(f"delivery {delivery_id} is not finished")

    existing = await db.get(DeliveryReview, (delivery_id, user_id))
    if existing is not None:
        existing.rating = rating
        existing.comment = comment
        await db.flush()
        return existing

    review_row = DeliveryReview(delivery_id=delivery_id, user_id=user_id, rating=rating, comment=comment)
    db.add(review_row)
    await db.flush()
    return review_row


async def list_deliveries(
    db: AsyncSession,
    shipper_id: Optional[str] = None,
    status: Optional[List[str]] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Delivery], int]:
    page = max(1, page)
    page_size = min(MAX_PAGE_SIZE, max(1, page_size))

    conditions = []
    if shipper_id:
        conditions.append(Delivery.shipper_id == shipper_id)
    if status:
        try:
            conditions.append(Delivery.status.in_([DeliveryStatus(s) for s in status]))
        except ValueError:
            raise ValidationError(f"invalid delivery status in {status}")

    total = await db.scalar(select(func.count()).select_from(Delivery).where(*conditions))
    result = await db.execute(
        select(Delivery)
        .where(*conditions)
        .order_by(Delivery.created_at.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    )
    return list(result.scalars().all()), total or 0
