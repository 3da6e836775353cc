"""
Status enums and transition graphs for bookings, deliveries and reports.

Each entity has one table of legal edges. ``ensure_transition`` rejects an
illegal edge before anything is written, and ``compare_and_set`` performs the
write as ``UPDATE ... WHERE status = :expected`` so that two concurrent callers
cannot both move the same row out of the same state.
"""
import enum
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from booking_engine.errors import InvalidStateTransition


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKING = "picking"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ReportStatus(str, enum.Enum):
    OPEN = "open"
    REVIEWING = "reviewing"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    CLOSED = "closed"


class FoodItemStatus(str, enum.Enum):
    AVAILABLE = "available"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.REJECTED,
        BookingStatus.EXPIRED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.ACCEPTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
}

DELIVERY_TRANSITIONS = {
    DeliveryStatus.PENDING: {DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED},
    DeliveryStatus.ASSIGNED: {DeliveryStatus.PICKING, DeliveryStatus.CANCELLED},
    DeliveryStatus.PICKING: {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED},
}

REPORT_TRANSITIONS = {
    ReportStatus.OPEN: {
        ReportStatus.REVIEWING,
        ReportStatus.IN_PROGRESS,
        ReportStatus.RESOLVED,
        ReportStatus.REJECTED,
    },
    ReportStatus.REVIEWING: {
        ReportStatus.IN_PROGRESS,
        ReportStatus.RESOLVED,
        ReportStatus.REJECTED,
    },
    ReportStatus.IN_PROGRESS: {ReportStatus.RESOLVED, ReportStatus.REJECTED},
    ReportStatus.RESOLVED: {ReportStatus.CLOSED},
    ReportStatus.REJECTED: {ReportStatus.CLOSED},
}

BOOKING_TERMINAL = frozenset(s for s in BookingStatus if s not in BOOKING_TRANSITIONS)
DELIVERY_TERMINAL = frozenset(s for s in DeliveryStatus if s not in DELIVERY_TRANSITIONS)
REPORT_TERMINAL = frozenset(s for s in ReportStatus if s not in REPORT_TRANSITIONS)


def can_transition(graph: dict, current, target) -> bool:
    return target in graph.get(current, ())


def ensure_transition(graph: dict, entity: str, entity_id: str, current, target):
    if not can_transition(graph, current, target):
        raise InvalidStateTransition(entity, entity_id, current, target)


async def compare_and_set(
    db: AsyncSession,
    model,
    entity: str,
    entity_id: str,
    expected,
    target,
    **values,
):
    """
    Move ``model`` row ``entity_id`` from ``expected`` to ``target``.

    Raises InvalidStateTransition when the row is no longer in ``expected``,
    i.e. a concurrent caller moved it first.
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise InvalidStateTransition(entity, entity_id, expected, target)
