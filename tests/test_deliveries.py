import asyncio
import pytest
from booking_engine import deliveries
from booking_engine.errors import InvalidStateTransition, NotFound, ValidationError
from booking_engine.models import CampaignCredit
from booking_engine.states import BookingStatus, DeliveryStatus


async def _walk_to_picking(booking_engine, delivery_id, shipper_id="shipper-1"):
    await booking_engine.transition_delivery(delivery_id, "assign", shipper_id=shipper_id)
    return await booking_engine.transition_delivery(delivery_id, "start_pickup", actor_id=shipper_id)


@pytest.mark.asyncio
async def test_full_lifecycle_completes_booking_and_credits_campaign(
    booking_engine, accepted_delivery, available, campaign_client
):
    """
    Test case 1: pending -> assigned -> picking -> delivered completes the booking and credits the campaign once.
    """
    delivery = await accepted_delivery(qty=3)

    assigned = await booking_engine.transition_delivery(
        delivery.id, "assign", shipper_id="shipper-1", pickup_ref="pickup-1", dropoff_ref="dropoff-1",
    )
    assert assigned.status == DeliveryStatus.ASSIGNED
    assert assigned.shipper_id == "shipper-1"
    assert assigned.assigned_at is not None

    picking = await booking_engine.transition_delivery(delivery.id, "start_pickup", actor_id="shipper-1")
    assert picking.status == DeliveryStatus.PICKING

    delivered = await booking_engine.transition_delivery(delivery.id, "deliver", actor_id="shipper-1")
    assert delivered.status == DeliveryStatus.DELIVERED
    assert delivered.delivered_at is not None

    booking = await booking_engine.get_booking(delivery.booking_id)
    assert booking.status == BookingStatus.COMPLETED
    # The reservation is consumed, not returned
    assert await available() == 2
    assert campaign_client.calls == [("campaign-1", 3, delivery.id)]


@pytest.mark.asyncio
async def test_replayed_deliver_credits_once(booking_engine, accepted_delivery, campaign_client):
    """
    Test case 2: A retried deliver is a no-op and never double-credits.
    """
    delivery = await accepted_delivery(qty=3)
    await _walk_to_picking(booking_engine, delivery.id)

    await booking_engine.transition_delivery(delivery.id, "deliver")
    replay = await booking_engine.transition_delivery(delivery.id, "delivered")

    assert replay.status == DeliveryStatus.DELIVERED
    assert len(campaign_client.calls) == 1


@pytest.mark.asyncio
async def test_failed_credit_is_retried_by_replayed_deliver(
    booking_engine, accepted_delivery, campaign_client, session_factory
):
    """
    Test case 3: If the campaign call fails after commit, replaying deliver sends it exactly once.
    """
    delivery = await accepted_delivery(qty=3)
    await _walk_to_picking(booking_engine, delivery.id)
    campaign_client.failures = 1

    delivered = await booking_engine.transition_delivery(delivery.id, "deliver")
    assert delivered.status == DeliveryStatus.DELIVERED
    assert campaign_client.calls == []

    async with session_factory() as session:
        credit = await session.get(CampaignCredit, delivery.id)
        assert credit.credited is False
    assert (await booking_engine.get_delivery(delivery.id)).status == DeliveryStatus.DELIVERED

    await booking_engine.transition_delivery(delivery.id, "deliver")
    await booking_engine.transition_delivery(delivery.id, "deliver")

    assert campaign_client.calls == [("campaign-1", 3, delivery.id)]
    async with session_factory() as session:
        credit = await session.get(CampaignCredit, delivery.id)
        assert credit.credited is True


@pytest.mark.asyncio
async def test_item_without_campaign_is_not_credited(booking_engine, accepted_delivery, campaign_client):
    delivery = await accepted_delivery(qty=2, campaign_id=None)
    await _walk_to_picking(booking_engine, delivery.id)

    await booking_engine.transition_delivery(delivery.id, "deliver")

    assert campaign_client.calls == []


@pytest.mark.asyncio
async def test_cancel_restores_inventory(booking_engine, accepted_delivery, available):
    """
    Test case 4: Cancelling an assigned delivery cancels the booking and returns its quantity.
    """
    delivery = await accepted_delivery(qty=3)
    await booking_engine.transition_delivery(delivery.id, "assign", shipper_id="shipper-1")
    assert await available() == 2

    cancelled = await booking_engine.transition_delivery(
        delivery.id, "cancel", actor_id="admin-1", reason="shipper unavailable",
    )

    assert cancelled.status == DeliveryStatus.CANCELLED
    assert cancelled.cancel_reason == "shipper unavailable"
    booking = await booking_engine.get_booking(delivery.booking_id)
    assert booking.status == BookingStatus.CANCELLED
    assert await available() == 5

    # Replaying the cancel does not release twice
    await booking_engine.transition_delivery(delivery.id, "cancel")
    assert await available() == 5


@pytest.mark.asyncio
async def test_terminal_states_are_absorbing(booking_engine, accepted_delivery, available):
    """
    Test case 5: Nothing leaves delivered or cancelled.
    """
    delivered = await accepted_delivery(qty=1)
    await _walk_to_picking(booking_engine, delivered.id)
    await booking_engine.transition_delivery(delivered.id, "deliver")

    with pytest.raises(InvalidStateTransition):
        await booking_engine.transition_delivery(delivered.id, "cancel")
    with pytest.raises(InvalidStateTransition):
        await booking_engine.transition_delivery(delivered.id, "assign", shipper_id="shipper-2")
    assert (await booking_engine.get_delivery(delivered.id)).status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_skipping_states_is_invalid(booking_engine, accepted_delivery):
    """
    Test case 6: A pending delivery cannot jump to picking or delivered.
    """
    delivery = await accepted_delivery()

    with pytest.raises(InvalidStateTransition):
        await booking_engine.transition_delivery(delivery.id, "start_pickup")
    with pytest.raises(InvalidStateTransition):
        await booking_engine.transition_delivery(delivery.id, "deliver")


@pytest.mark.asyncio
async def test_assign_requires_shipper(booking_engine, accepted_delivery):
    delivery = await accepted_delivery()

    with pytest.raises(ValidationError):
        await booking_engine.transition_delivery(delivery.id, "assign")


@pytest.mark.asyncio
async def test_shipper_accept_uses_actor_as_shipper(booking_engine, accepted_delivery):
    delivery = await accepted_delivery()

    assigned = await booking_engine.transition_delivery(delivery.id, "accept", actor_id="shipper-9")

    assert assigned.status == DeliveryStatus.ASSIGNED
    assert assigned.shipper_id == "shipper-9"


@pytest.mark.asyncio
async def test_unknown_action(booking_engine, accepted_delivery):
    delivery = await accepted_delivery()

    with pytest.raises(ValidationError):
        await booking_engine.transition_delivery(delivery.id, "teleport")


@pytest.mark.asyncio
async def test_concurrent_assign_has_one_winner(booking_engine, accepted_delivery):
    """
    Test case 7: Two shippers claim the same delivery at once; one succeeds, one gets InvalidStateTransition.
    """
    delivery = await accepted_delivery()

    results = await asyncio.gather(
        booking_engine.transition_delivery(delivery.id, "assign", shipper_id="shipper-1"),
        booking_engine.transition_delivery(delivery.id, "assign", shipper_id="shipper-2"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], InvalidStateTransition)
    stored = await booking_engine.get_delivery(delivery.id)
    assert stored.shipper_id == winners[0].shipper_id


@pytest.mark.asyncio
async def test_create_delivery_is_idempotent(booking_engine, accepted_delivery):
    delivery = await accepted_delivery()

    again = await booking_engine.create_delivery(delivery.booking_id)

    assert again.id == delivery.id


@pytest.mark.asyncio
async def test_create_delivery_requires_accepted_booking(booking_engine, add_food_item):
    await add_food_item()
    booking = await booking_engine.create_booking("receiver-1", "food-1", 1)

    with pytest.raises(InvalidStateTransition):
        await booking_engine.create_delivery(booking.id)


@pytest.mark.asyncio
async def test_review_after_delivery(booking_engine, accepted_delivery):
    """
    Test case 8: Reviews are accepted only on finished deliveries and overwrite per user.
    """
    delivery = await accepted_delivery()

    with pytest.raises(ValidationError):
        await booking_engine.review_delivery(delivery.id, "receiver-1", 5)

    await _walk_to_picking(booking_engine, delivery.id)
    await booking_engine.transition_delivery(delivery.id, "deliver")

    review = await booking_engine.review_delivery(delivery.id, "receiver-1", 4, "on time")
    assert review.rating == 4
    review = await booking_engine.review_delivery(delivery.id, "receiver-1", 2)
    assert review.rating == 2
    assert review.comment is None

    with pytest.raises(ValidationError):
        await booking_engine.review_delivery(delivery.id, "receiver-1", 6)


@pytest.mark.asyncio
async def test_list_deliveries_by_shipper_and_status(booking_engine, add_food_item, delivery_for):
    await add_food_item(qty_total=10)
    ids = []
    for _ in range(3):
        booking = await booking_engine.create_booking("receiver-1", "food-1", 1)
        await booking_engine.decide_booking(booking.id, "accept")
        ids.append((await delivery_for(booking.id)).id)
    await booking_engine.transition_delivery(ids[0], "assign", shipper_id="shipper-1")

    items, total = await booking_engine.list_deliveries(shipper_id="shipper-1")
    assert total == 1
    assert items[0].id == ids[0]

    items, total = await booking_engine.list_deliveries(status=["pending", "assigned"])
    assert total == 3

    with pytest.raises(ValidationError):
        await booking_engine.list_deliveries(status=["lost"])


@pytest.mark.asyncio
async def test_get_unknown_delivery(session_factory):
    async with session_factory() as session:
        with pytest.raises(NotFound):
            await deliveries.get(session, "missing")
