"""
Dispute reports filed against deliveries.

Reports are an audit trail only: nothing here writes to bookings, deliveries
or the ledger.
"""
import logging
import unicodedata
from datetime import datetime
from typing import Optional, List
from uuid import uuid4
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from booking_engine.errors import InvalidStateTransition, NotFound, ValidationError
from booking_engine.models import Delivery, Report, utcnow
from booking_engine.states import (
    REPORT_TERMINAL, REPORT_TRANSITIONS, ReportStatus, compare_and_set, ensure_transition,
)

logger = logging.getLogger(__name__)

REASONS = {"late", "missing", "attitude", "damage", "other"}
MIN_DETAILS_LENGTH = 5

# Labels the client apps show, mapped to reason codes
REASON_ALIASES = {
    "giao muộn": "late",
    "giao trễ": "late",
    "trễ": "late",
    "thiếu hàng": "missing",
    "thiếu": "missing",
    "thái độ không tốt": "attitude",
    "thái độ": "attitude",
    "hàng hoá hư hỏng": "damage",
    "hư hỏng": "damage",
    "hỏng": "damage",
    "khác": "other",
}


def normalize_reason(reason: Optional[str]) -> str:
    raw = " ".join(unicodedata.normalize("NFC", str(reason or "")).strip().lower().split())
    return REASON_ALIASES.get(raw) or raw.replace(" ", "_")


async def get(db: AsyncSession, report_id: str) -> Report:
    result = await db.execute(
        select(Report)
        .where(Report.id == report_id)
        .execution_options(populate_existing=True)
    )
    report = result.scalar_one_or_none()
    if report is None:
        raise NotFound("report", report_id)
    return report


async def file(
    db: AsyncSession,
    delivery_id: str,
    reporter_id: str,
    reason: str,
    details: Optional[str] = None,
    images: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> Report:
    if not reporter_id:
        raise ValidationError("reporter_id is required")
    reason = normalize_reason(reason)
    if reason not in REASONS:
        raise ValidationError(f"reason must be one of {sorted(REASONS)}")
    if details and len(details.strip()) < MIN_DETAILS_LENGTH:
        raise ValidationError(f"details must be at least {MIN_DETAILS_LENGTH} characters")

    # Any delivery status is fine, terminal ones included
    if await db.get(Delivery, delivery_id) is None:
        raise NotFound("delivery", delivery_id)

    now = now or utcnow()
    report = Report(
        id=str(uuid4()),
        delivery_id=delivery_id,
        reporter_id=reporter_id,
        reason=reason,
        details=details,
        images=list(images or []),
        status=ReportStatus.OPEN,
        created_at=now,
        updated_at=now,
    )
    db.add(report)
    await db.flush()
    logger.info(f"Report {report.id} filed on delivery {delivery_id} by {reporter_id}: {reason}")
    return report


async def reply(
    db: AsyncSession,
    report_id: str,
    admin_id: str,
    reply_text: str,
    next_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Report:
    if not admin_id:
        raise ValidationError("admin_id is required")
    now = now or utcnow()
    report = await get(db, report_id)
    values = {"admin_reply": reply_text or "", "admin_id": admin_id, "updated_at": now}

    if next_status:
        try:
            target = ReportStatus(str(next_status).strip().lower())
        except ValueError:
            raise ValidationError(f"invalid report status: {next_status}")
        ensure_transition(REPORT_TRANSITIONS, "report", report_id, report.status, target)
        await compare_and_set(db, Report, "report", report_id, report.status, target, **values)
        logger.info(f"Report {report_id} status updated {report.status.value} -> {target.value}")
    else:
        if report.status in REPORT_TERMINAL:
            raise InvalidStateTransition("report", report_id, report.status, report.status)
        # Reply only; still guarded so a concurrent close is not overwritten
        await compare_and_set(db, Report, "report", report_id, report.status, report.status, **values)

    return await get(db, report_id)


async def list_for_delivery(db: AsyncSession, delivery_id: str) -> List[Report]:
    if await db.get(Delivery, delivery_id) is None:
        raise NotFound("delivery", delivery_id)
    result = await db.execute(
        select(Report)
        .where(Report.delivery_id == delivery_id)
        .order_by(Report.created_at.desc())
    )
    return list(result.scalars().all())
