"""
Transactional entry points of the booking & delivery lifecycle.

Each public method runs one short transaction and either commits everything or
nothing. Domain events and the campaign credit are sent after commit.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List
from sqlalchemy.exc import SQLAlchemyError
from booking_engine import bookings, deliveries, ledger, reports
from booking_engine.messaging import BOOKING_EXCHANGE, build_event
from booking_engine.states import DELIVERY_TERMINAL, BookingStatus, DeliveryStatus

logger = logging.getLogger(__name__)


class BookingEngine:
    def __init__(self, session_factory, campaign_client=None, publisher=None):
        self.session_factory = session_factory
        self.campaign_client = campaign_client
        self.publisher = publisher

    @asynccontextmanager
    async def transaction(self):
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError:
                logger.exception("Storage failure, transaction rolled back")
                raise

    async def _notify(self, routing_key: str, event_type: str, **payload):
        if self.publisher is None:
            return
        try:
            await self.publisher(BOOKING_EXCHANGE, routing_key, build_event(event_type, **payload))
        except Exception as e:
            # Notifications are best effort; the state change is already committed
            logger.warning(f"Event {event_type} not published: {e}")

    # Bookings

    async def create_booking(
        self,
        receiver_id: str,
        food_item_id: str,
        qty: int,
        method: str = "pickup",
        pickup_point: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        async with self.transaction() as session:
            booking = await bookings.create(
                session, receiver_id, food_item_id, qty,
                method=method, pickup_point=pickup_point, note=note, now=now,
            )
        await self._notify(
            "booking.created", "BookingCreated",
            booking_id=booking.id, food_item_id=food_item_id, receiver_id=receiver_id, qty=qty,
        )
        return booking

    async def decide_booking(self, booking_id: str, outcome: str, now: Optional[datetime] = None):
        delivery = None
        async with self.transaction() as session:
            booking = await bookings.decide(session, booking_id, outcome, now=now)
            if booking.status is BookingStatus.ACCEPTED:
                delivery = await deliveries.create(session, booking.id, now=now)

        await self._notify(
            f"booking.{booking.status.value}", f"Booking{booking.status.value.capitalize()}",
            booking_id=booking.id, receiver_id=booking.receiver_id,
        )
        if delivery is not None:
            await self._notify(
                "delivery.pending", "DeliveryCreated",
                delivery_id=delivery.id, booking_id=booking.id,
            )
        return booking

    async def cancel_booking(self, booking_id: str, actor: Optional[str], now: Optional[datetime] = None):
        async with self.transaction() as session:
            delivery = await deliveries.get_by_booking(session, booking_id)
            in_flight = delivery is not None and delivery.status not in DELIVERY_TERMINAL
            booking = await bookings.cancel(session, booking_id, actor, now=now)

        await self._notify("booking.cancelled", "BookingCancelled", booking_id=booking.id, actor=actor)
        if in_flight:
            await self._notify(
                "delivery.cancelled", "DeliveryStatusChanged",
                delivery_id=delivery.id, booking_id=booking.id, status=DeliveryStatus.CANCELLED.value,
            )
        return booking

    async def expire_booking(self, booking_id: str, now: Optional[datetime] = None):
        async with self.transaction() as session:
            booking = await bookings.expire(session, booking_id, now=now)
        await self._notify("booking.expired", "BookingExpired", booking_id=booking.id)
        return booking

    async def get_booking(self, booking_id: str):
        async with self.transaction() as session:
            return await bookings.get(session, booking_id)

    async def list_bookings(self, receiver_id=None, status=None, page: int = 1, page_size: int = 20):
        async with self.transaction() as session:
            return await bookings.list_bookings(
                session, receiver_id=receiver_id, status=status, page=page, page_size=page_size,
            )

    # Deliveries

    async def create_delivery(self, booking_id: str, now: Optional[datetime] = None):
        async with self.transaction() as session:
            return await deliveries.create(session, booking_id, now=now)

    async def transition_delivery(
        self,
        delivery_id: str,
        action: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        **payload,
    ):
        async with self.transaction() as session:
            delivery = await deliveries.transition(
                session, delivery_id, action, actor_id=actor_id, now=now, **payload,
            )

        if delivery.status is DeliveryStatus.DELIVERED:
            try:
                await self.apply_campaign_credit(delivery_id, now=now)
            except Exception as e:
                # The delivery is committed; the credit row stays pending for a replayed deliver
                logger.warning(f"Campaign credit for delivery {delivery_id} left pending: {e}")
        await self._notify(
            f"delivery.{delivery.status.value}", "DeliveryStatusChanged",
            delivery_id=delivery.id, booking_id=delivery.booking_id,
            status=delivery.status.value, shipper_id=delivery.shipper_id,
        )
        return delivery

    async def apply_campaign_credit(self, delivery_id: str, now: Optional[datetime] = None) -> bool:
        if self.campaign_client is None:
            logger.warning(f"No campaign client configured; credit for delivery {delivery_id} left pending")
            return False
        async with self.transaction() as session:
            return await deliveries.apply_campaign_credit(session, delivery_id, self.campaign_client, now=now)

    async def review_delivery(self, delivery_id: str, user_id: str, rating: int, comment: Optional[str] = None):
        async with self.transaction() as session:
            return await deliveries.review(session, delivery_id, user_id, rating, comment)

    async def get_delivery(self, delivery_id: str):
        async with self.transaction() as session:
            return await deliveries.get(session, delivery_id)

    async def list_deliveries(self, shipper_id=None, status: Optional[List[str]] = None, page: int = 1, page_size: int = 20):
        async with self.transaction() as session:
            return await deliveries.list_deliveries(
                session, shipper_id=shipper_id, status=status, page=page, page_size=page_size,
            )

    # Reports

    async def file_report(
        self,
        delivery_id: str,
        reporter_id: str,
        reason: str,
        details: Optional[str] = None,
        images: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ):
        async with self.transaction() as session:
            report = await reports.file(session, delivery_id, reporter_id, reason, details, images, now=now)
        await self._notify(
            "report.filed", "ReportFiled",
            report_id=report.id, delivery_id=delivery_id, reason=report.reason,
        )
        return report

    async def reply_report(
        self,
        report_id: str,
        admin_id: str,
        reply: str,
        next_status: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        async with self.transaction() as session:
            report = await reports.reply(session, report_id, admin_id, reply, next_status, now=now)
        await self._notify(
            "report.updated", "ReportUpdated",
            report_id=report.id, delivery_id=report.delivery_id, status=report.status.value,
        )
        return report

    async def list_reports(self, delivery_id: str):
        async with self.transaction() as session:
            return await reports.list_for_delivery(session, delivery_id)

    # Ledger

    async def availability(self, item_id: str):
        async with self.transaction() as session:
            return await ledger.get_item(session, item_id)

    async def sync_food_item(self, item_id: str, qty_total: int, **fields):
        async with self.transaction() as session:
            return await ledger.sync_item(session, item_id, qty_total, **fields)
