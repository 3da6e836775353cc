"""
Inventory ledger: per-item reservable quantity.

Every counter write is an optimistic compare-and-swap on ``food_items.version``;
a lost race raises Conflict and is retried with exponential backoff up to
LEDGER_MAX_ATTEMPTS before surfacing to the caller.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from booking_engine.config import LEDGER_MAX_ATTEMPTS
from booking_engine.errors import Conflict, InsufficientInventory, ItemExpired, NotFound, ValidationError
from booking_engine.models import FoodItem, InventoryReservation, utcnow
from booking_engine.states import FoodItemStatus

logger = logging.getLogger(__name__)

optimistic_retry = retry(
    retry=retry_if_exception_type(Conflict),
    stop=stop_after_attempt(LEDGER_MAX_ATTEMPTS),
    wait=wait_exponential(multiplier=0.02, min=0.01, max=0.5),
    reraise=True,
)


def _is_expired(item: FoodItem, now: datetime) -> bool:
    if item.status == FoodItemStatus.EXPIRED:
        return True
    return item.expires_at is not None and item.expires_at <= now


def _item_status(item: FoodItem, qty_reserved: int, now: datetime) -> FoodItemStatus:
    # expired is sticky for counter updates; only the catalog can lift it
    return _derive_status(
        item.qty_total, qty_reserved, item.expires_at, now,
        expired=item.status == FoodItemStatus.EXPIRED,
    )


def _derive_status(
    qty_total: int,
    qty_reserved: int,
    expires_at: Optional[datetime],
    now: datetime,
    expired: bool = False,
) -> FoodItemStatus:
    if expired or (expires_at is not None and expires_at <= now):
        return FoodItemStatus.EXPIRED
    if qty_reserved >= qty_total:
        return FoodItemStatus.EXHAUSTED
    return FoodItemStatus.AVAILABLE


async def get_item(db: AsyncSession, item_id: str) -> FoodItem:
    result = await db.execute(
        select(FoodItem)
        .where(FoodItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFound("food item", item_id)
    return item


async def _swap(db: AsyncSession, item: FoodItem, **values):
    result = await db.execute(
        update(FoodItem)
        .where(FoodItem.id == item.id, FoodItem.version == item.version)
        .values(version=item.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Version conflict on food item {item.id} at version {item.version}")
        raise Conflict(f"food item {item.id} changed concurrently")


@optimistic_retry
async def _debit(db: AsyncSession, item_id: str, qty: int, now: datetime):
    item = await get_item(db, item_id)
    if _is_expired(item, now):
        raise ItemExpired(item_id)

    available = item.qty_total - item.qty_reserved
    if available < qty:
        raise InsufficientInventory(item_id, qty, max(available, 0))

    qty_reserved = item.qty_reserved + qty
    await _swap(db, item, qty_reserved=qty_reserved, status=_item_status(item, qty_reserved, now))


@optimistic_retry
async def _credit_back(db: AsyncSession, item_id: str, qty: int, now: datetime):
    item = await get_item(db, item_id)
    qty_reserved = max(item.qty_reserved - qty, 0)
    await _swap(db, item, qty_reserved=qty_reserved, status=_item_status(item, qty_reserved, now))


async def reserve(db: AsyncSession, item_id: str, qty: int, now: Optional[datetime] = None) -> str:
    """
    Debit ``qty`` from the item's available quantity and return a reservation token.

    Raises ValidationError for a non-positive quantity, ItemExpired past the
    item's expiry, InsufficientInventory when not enough is left and Conflict
    when the optimistic retries are exhausted.
    """
    if not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer")
    now = now or utcnow()

    await _debit(db, item_id, qty, now)

    token = str(uuid4())
    db.add(InventoryReservation(token=token, food_item_id=item_id, qty=qty, created_at=now))
    await db.flush()
    logger.info(f"Reserved {qty} of food item {item_id} (token {token})")
    return token


async def release(db: AsyncSession, token: str, now: Optional[datetime] = None) -> bool:
    """
    Give a reservation back to the item. Returns False when the token was
    already released, which leaves the counters untouched.
    """
    now = now or utcnow()
    reservation = await db.get(InventoryReservation, token)
    if reservation is None:
        raise NotFound("reservation", token)

    result = await db.execute(
        update(InventoryReservation)
        .where(InventoryReservation.token == token, InventoryReservation.released_at.is_(None))
        .values(released_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Reservation {token} already released. Idempotent.")
        return False

    await _credit_back(db, reservation.food_item_id, reservation.qty, now)
    logger.info(f"Released {reservation.qty} of food item {reservation.food_item_id} (token {token})")
    return True


async def available(db: AsyncSession, item_id: str) -> int:
    item = await get_item(db, item_id)
    return item.qty_available


@optimistic_retry
async def sync_item(
    db: AsyncSession,
    item_id: str,
    qty_total: int,
    expires_at: Optional[datetime] = None,
    donor_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    title: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FoodItem:
    """Mirror a food catalog row into the ledger."""
    if not isinstance(qty_total, int) or qty_total < 0:
        raise ValidationError("qty_total must be a non-negative integer")
    now = now or utcnow()

    result = await db.execute(
        select(FoodItem)
        .where(FoodItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        item = FoodItem(
            id=item_id,
            donor_id=donor_id,
            campaign_id=campaign_id,
            title=title,
            qty_total=qty_total,
            qty_reserved=0,
            expires_at=expires_at,
            version=1,
            status=_derive_status(qty_total, 0, expires_at, now),
        )
        db.add(item)
        await db.flush()
        logger.info(f"Food item {item_id} registered with {qty_total} units")
        return item

    if qty_total < item.qty_reserved:
        raise ValidationError(
            f"qty_total {qty_total} is below the {item.qty_reserved} units already reserved"
        )

    await _swap(
        db,
        item,
        qty_total=qty_total,
        expires_at=expires_at,
        donor_id=donor_id,
        campaign_id=campaign_id,
        title=title,
        status=_derive_status(qty_total, item.qty_reserved, expires_at, now),
    )
    logger.info(f"Food item {item_id} synced: {qty_total} units, {item.qty_reserved} reserved")
    return await get_item(db, item_id)


async def mark_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        update(FoodItem)
        .where(
            FoodItem.expires_at.is_not(None),
            FoodItem.expires_at <= now,
            FoodItem.status != FoodItemStatus.EXPIRED,
        )
        .values(status=FoodItemStatus.EXPIRED, version=FoodItem.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Marked {result.rowcount} food item(s) expired")
    return result.rowcount
