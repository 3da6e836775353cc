import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List
from sqlalchemy.exc import SQLAlchemyError
from booking_engine import bookings, ledger
from booking_engine.config import BOOKING_PENDING_TTL_HOURS, SWEEP_INTERVAL_SECONDS
from booking_engine.errors import EngineError, InvalidStateTransition
from booking_engine.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    cutoff: datetime
    expired_bookings: List[str] = field(default_factory=list)
    expired_items: int = 0
    failed_bookings: List[str] = field(default_factory=list)


class ExpirySweep:
    """
    Periodic job that expires stale pending bookings.

    It goes through ``BookingEngine.expire_booking``, the same operation an
    operator would call, so inventory is released on a single code path. Safe
    to run concurrently with itself: a booking already moved by another pass
    fails its compare-and-set and is skipped.
    """

    def __init__(self, engine, ttl: Optional[timedelta] = None, interval: Optional[float] = None):
        self.engine = engine
        self.ttl = ttl or timedelta(hours=BOOKING_PENDING_TTL_HOURS)
        self.interval = interval if interval is not None else SWEEP_INTERVAL_SECONDS

    async def run_once(self, now: Optional[datetime] = None, ttl: Optional[timedelta] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult(cutoff=now - (ttl or self.ttl))

        async with self.engine.session_factory() as session:
            async with session.begin():
                result.expired_items = await ledger.mark_expired(session, now=now)
            candidates = await bookings.stale_pending_ids(session, result.cutoff)

        for booking_id in candidates:
            try:
                await self.engine.expire_booking(booking_id, now=now)
            except InvalidStateTransition:
                logger.info(f"Booking {booking_id} was decided before expiry. Skipping.")
                continue
            except (EngineError, SQLAlchemyError):
                logger.exception(f"Could not expire booking {booking_id}; moving on")
                result.failed_bookings.append(booking_id)
                continue
            result.expired_bookings.append(booking_id)

        logger.info(
            f"Expiry sweep done: {len(result.expired_bookings)} booking(s) expired, "
            f"{result.expired_items} item(s) expired, {len(result.failed_bookings)} failed, cutoff {result.cutoff.isoformat()}"
        )
        return result

    async def run_forever(self):
        logger.info(f"Expiry sweep running every {self.interval}s (ttl {self.ttl})")
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep pass failed")
            await asyncio.sleep(self.interval)
