import asyncio
import pytest
from datetime import timedelta
from booking_engine import ledger
from booking_engine.errors import Conflict, InsufficientInventory, ItemExpired, NotFound, ValidationError
from booking_engine.models import utcnow
from booking_engine.states import FoodItemStatus


@pytest.mark.asyncio
async def test_reserve_debits_available_quantity(session_factory, add_food_item, available):
    """
    Test case 1: A reservation lowers the available quantity by exactly its qty.
    """
    await add_food_item(qty_total=5)

    async with session_factory() as session:
        async with session.begin():
            token = await ledger.reserve(session, "food-1", 3)

    assert token
    assert await available() == 2


@pytest.mark.asyncio
async def test_reserve_rejects_more_than_available(session_factory, add_food_item, available):
    """
    Test case 2: Asking for more than is left raises InsufficientInventory and writes nothing.
    """
    await add_food_item(qty_total=2)

    async with session_factory() as session:
        with pytest.raises(InsufficientInventory) as exc_info:
            async with session.begin():
                await ledger.reserve(session, "food-1", 3)

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert await available() == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("qty", [0, -1])
async def test_reserve_rejects_non_positive_qty(session_factory, add_food_item, qty):
    """
    Test case 3: Zero and negative quantities are validation errors.
    """
    await add_food_item()

    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await ledger.reserve(session, "food-1", qty)


@pytest.mark.asyncio
async def test_reserve_rejects_expired_item(session_factory, add_food_item, available):
    """
    Test case 4: An item past its expiry accepts no new reservations.
    """
    await add_food_item(qty_total=5, expires_in=timedelta(hours=-1))

    async with session_factory() as session:
        with pytest.raises(ItemExpired):
            await ledger.reserve(session, "food-1", 1)

    assert await available() == 5


@pytest.mark.asyncio
async def test_reserve_unknown_item(session_factory):
    """
    Test case 5: Reserving an item the ledger has never seen raises NotFound.
    """
    async with session_factory() as session:
        with pytest.raises(NotFound):
            await ledger.reserve(session, "food-missing", 1)


@pytest.mark.asyncio
async def test_release_is_idempotent(session_factory, add_food_item, available):
    """
    Test case 6: Releasing the same token twice restores the quantity once.
    """
    await add_food_item(qty_total=5)

    async with session_factory() as session:
        async with session.begin():
            token = await ledger.reserve(session, "food-1", 3)
        async with session.begin():
            assert await ledger.release(session, token) is True
        async with session.begin():
            assert await ledger.release(session, token) is False

    assert await available() == 5


@pytest.mark.asyncio
async def test_release_unknown_token(session_factory):
    """
    Test case 7: A token that was never issued raises NotFound.
    """
    async with session_factory() as session:
        with pytest.raises(NotFound):
            await ledger.release(session, "no-such-token")


@pytest.mark.asyncio
async def test_exhausted_item_becomes_available_after_release(session_factory, add_food_item):
    """
    Test case 8: Reserving the last unit exhausts the item; releasing it makes it available again.
    """
    await add_food_item(qty_total=2)

    async with session_factory() as session:
        async with session.begin():
            token = await ledger.reserve(session, "food-1", 2)
            item = await ledger.get_item(session, "food-1")
            assert item.status == FoodItemStatus.EXHAUSTED

        async with session.begin():
            await ledger.release(session, token)
            item = await ledger.get_item(session, "food-1")
        assert item.status == FoodItemStatus.AVAILABLE
        assert item.qty_available == 2


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overcommit(session_factory, add_food_item):
    """
    Test case 9: Many concurrent reservations never take more than qty_total.
    """
    await add_food_item(qty_total=5)

    async def reserve_one():
        async with session_factory() as session:
            try:
                async with session.begin():
                    await ledger.reserve(session, "food-1", 1)
            except (InsufficientInventory, Conflict):
                return 0
            return 1

    results = await asyncio.gather(*(reserve_one() for _ in range(8)))

    async with session_factory() as session:
        item = await ledger.get_item(session, "food-1")
    assert sum(results) <= 5
    assert item.qty_reserved == sum(results)
    assert 0 <= item.qty_reserved <= item.qty_total


@pytest.mark.asyncio
async def test_sync_item_refuses_total_below_reserved(session_factory, add_food_item, booking_engine):
    """
    Test case 10: The catalog cannot shrink an item below what is already reserved.
    """
    await add_food_item(qty_total=5)
    async with session_factory() as session:
        async with session.begin():
            await ledger.reserve(session, "food-1", 4)

    with pytest.raises(ValidationError):
        await booking_engine.sync_food_item("food-1", 3)

    item = await booking_engine.sync_food_item("food-1", 8, campaign_id="campaign-2")
    assert item.qty_total == 8
    assert item.qty_reserved == 4
    assert item.campaign_id == "campaign-2"


@pytest.mark.asyncio
async def test_mark_expired(session_factory, add_food_item):
    """
    Test case 11: mark_expired flips items past their expiry and is a no-op the second time.
    """
    await add_food_item(item_id="food-old", expires_in=timedelta(minutes=5))
    await add_food_item(item_id="food-new", expires_in=timedelta(days=3))
    later = utcnow() + timedelta(hours=1)

    async with session_factory() as session:
        async with session.begin():
            assert await ledger.mark_expired(session, now=later) == 1
        async with session.begin():
            assert await ledger.mark_expired(session, now=later) == 0

        old = await ledger.get_item(session, "food-old")
        new = await ledger.get_item(session, "food-new")
    assert old.status == FoodItemStatus.EXPIRED
    assert new.status == FoodItemStatus.AVAILABLE
