"""
Booking service: receiver requests against the ledger.

This module is the only caller of ``ledger.reserve`` and ``ledger.release``.
Every release goes through ``_release_and_move`` so a booking gives its
reservation back exactly once whichever path (reject, cancel, expire) ends it.
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple
from uuid import uuid4
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from booking_engine import ledger
from booking_engine.errors import InvalidStateTransition, NotFound, ValidationError
from booking_engine.models import Booking, Delivery, utcnow
from booking_engine.states import (
    BOOKING_TRANSITIONS, DELIVERY_TRANSITIONS, BookingStatus, DeliveryStatus, compare_and_set, ensure_transition,
)

logger = logging.getLogger(__name__)

METHODS = {"pickup", "meet", "delivery"}
DECISIONS = {"accept": BookingStatus.ACCEPTED, "reject": BookingStatus.REJECTED}
MAX_PAGE_SIZE = 100


async def get(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound("booking", booking_id)
    return booking


async def _delivery_status(db: AsyncSession, booking_id: str) -> Optional[DeliveryStatus]:
    result = await db.execute(select(Delivery.status).where(Delivery.booking_id == booking_id))
    return result.scalar_one_or_none()


async def _move(db: AsyncSession, booking: Booking, target: BookingStatus, **values) -> Booking:
    ensure_transition(BOOKING_TRANSITIONS, "booking", booking.id, booking.status, target)
    await compare_and_set(db, Booking, "booking", booking.id, booking.status, target, **values)
    logger.info(f"Booking {booking.id} status updated {booking.status.value} -> {target.value}")
    return await get(db, booking.id)


async def _release_and_move(
    db: AsyncSession, booking: Booking, target: BookingStatus, now: datetime, **values
) -> Booking:
    # Status first: the loser of a concurrent race fails here, before touching the ledger
    booking = await _move(db, booking, target, **values)
    await ledger.release(db, booking.reservation_token, now=now)
    return booking


async def create(
    db: AsyncSession,
    receiver_id: str,
    food_item_id: str,
    qty: int,
    method: str = "pickup",
    pickup_point: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    if not receiver_id:
        raise ValidationError("receiver_id is required")
    if not food_item_id:
        raise ValidationError("food_item_id is required")
    if not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer")
    if method not in METHODS:
        raise ValidationError(f"method must be one of {sorted(METHODS)}")
    now = now or utcnow()

    # InsufficientInventory propagates as is; nothing has been written yet
    token = await ledger.reserve(db, food_item_id, qty, now=now)

    booking = Booking(
        id=str(uuid4()),
        food_item_id=food_item_id,
        receiver_id=receiver_id,
        qty=qty,
        status=BookingStatus.PENDING,
        reservation_token=token,
        method=method,
        pickup_point=pickup_point if method == "pickup" else None,
        note=note,
        created_at=now,
        updated_at=now,
    )
    db.add(booking)
    await db.flush()
    logger.info(f"Booking {booking.id} created for receiver {receiver_id}: {qty} x {food_item_id}")
    return booking


async def decide(db: AsyncSession, booking_id: str, outcome: str, now: Optional[datetime] = None) -> Booking:
    target = DECISIONS.get(outcome)
    if target is None:
        raise ValidationError(f"outcome must be one of {sorted(DECISIONS)}")
    now = now or utcnow()
    booking = await get(db, booking_id)

    if target is BookingStatus.REJECTED:
        return await _release_and_move(db, booking, target, now, decision_at=now)
    # Accepting keeps the reservation until the delivery resolves
    return await _move(db, booking, target, decision_at=now)


async def _delivery(db: AsyncSession, booking_id: str) -> Optional[Delivery]:
    result = await db.execute(
        select(Delivery)
        .where(Delivery.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def cancel(db: AsyncSession, booking_id: str, actor: Optional[str], now: Optional[datetime] = None) -> Booking:
    """
    Cancel a pending or accepted booking and release its reservation once.

    A delivery still in flight is cancelled along with it. Once the delivery
    is delivered the booking can only complete.
    """
    now = now or utcnow()
    booking = await get(db, booking_id)
    ensure_transition(BOOKING_TRANSITIONS, "booking", booking.id, booking.status, BookingStatus.CANCELLED)

    delivery = await _delivery(db, booking_id)
    if delivery is not None and delivery.status is DeliveryStatus.DELIVERED:
        logger.warning(f"Booking {booking_id} was already delivered; refusing cancel")
        raise InvalidStateTransition("booking", booking_id, booking.status, BookingStatus.CANCELLED)
    if delivery is not None and delivery.status is not DeliveryStatus.CANCELLED:
        ensure_transition(DELIVERY_TRANSITIONS, "delivery", delivery.id, delivery.status, DeliveryStatus.CANCELLED)
        await compare_and_set(
            db, Delivery, "delivery", delivery.id, delivery.status, DeliveryStatus.CANCELLED,
            cancelled_at=now, cancel_reason=f"booking cancelled by {actor or 'system'}",
        )
        logger.info(f"Delivery {delivery.id} status updated {delivery.status.value} -> cancelled")

    return await _release_and_move(db, booking, BookingStatus.CANCELLED, now, cancelled_by=actor)


async def complete(db: AsyncSession, booking_id: str) -> Booking:
    booking = await get(db, booking_id)
    ensure_transition(BOOKING_TRANSITIONS, "booking", booking.id, booking.status, BookingStatus.COMPLETED)
    if await _delivery_status(db, booking_id) is not DeliveryStatus.DELIVERED:
        raise InvalidStateTransition("booking", booking_id, booking.status, BookingStatus.COMPLETED)
    # The reservation is consumed, not released
    return await _move(db, booking, BookingStatus.COMPLETED)


async def expire(db: AsyncSession, booking_id: str, now: Optional[datetime] = None) -> Booking:
    now = now or utcnow()
    booking = await get(db, booking_id)
    return await _release_and_move(db, booking, BookingStatus.EXPIRED, now, decision_at=now)


async def stale_pending_ids(db: AsyncSession, cutoff: datetime) -> List[str]:
    result = await db.execute(
        select(Booking.id)
        .where(Booking.status == BookingStatus.PENDING, Booking.created_at < cutoff)
        .order_by(Booking.created_at)
    )
    return list(result.scalars().all())


async def list_bookings(
    db: AsyncSession,
    receiver_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Booking], int]:
    page = max(1, page)
    page_size = min(MAX_PAGE_SIZE, max(1, page_size))

    conditions = []
    if receiver_id:
        conditions.append(Booking.receiver_id == receiver_id)
    if status:
        try:
            conditions.append(Booking.status == BookingStatus(status))
        except ValueError:
            raise ValidationError(f"invalid booking status: {status}")

    total = await db.scalar(select(func.count()).select_from(Booking).where(*conditions))
    result = await db.execute(
        select(Booking)
        .where(*conditions)
        .order_by(Booking.created_at.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    )
    return list(result.scalars().all()), total or 0
