import pytest
from booking_engine.errors import InvalidStateTransition, NotFound, ValidationError
from booking_engine.reports import normalize_reason
from booking_engine.states import DeliveryStatus, ReportStatus


@pytest.fixture
def delivered(booking_engine, accepted_delivery):
    async def _delivered():
        delivery = await accepted_delivery()
        await booking_engine.transition_delivery(delivery.id, "assign", shipper_id="shipper-1")
        await booking_engine.transition_delivery(delivery.id, "start_pickup")
        return await booking_engine.transition_delivery(delivery.id, "deliver")
    return _delivered


@pytest.mark.asyncio
async def test_file_report_on_finished_delivery(booking_engine, delivered, available):
    """
    Test case 1: Reports can be filed on terminal deliveries and leave the delivery and ledger alone.
    """
    delivery = await delivered()
    before = await available()

    report = await booking_engine.file_report(
        delivery.id, "receiver-1", "Late", "arrived two hours late", ["https://img/1.png"],
    )

    assert report.status == ReportStatus.OPEN
    assert report.reason == "late"
    assert report.images == ["https://img/1.png"]
    assert (await booking_engine.get_delivery(delivery.id)).status == DeliveryStatus.DELIVERED
    assert await available() == before


@pytest.mark.asyncio
async def test_report_resolution_path(booking_engine, delivered):
    """
    Test case 2: open -> in_progress -> resolved -> closed, then closed accepts nothing.
    """
    delivery = await delivered()
    report = await booking_engine.file_report(delivery.id, "receiver-1", "missing", "one box missing")

    report = await booking_engine.reply_report(report.id, "admin-1", "looking into it", "in_progress")
    assert report.status == ReportStatus.IN_PROGRESS
    assert report.admin_reply == "looking into it"
    assert report.admin_id == "admin-1"

    report = await booking_engine.reply_report(report.id, "admin-1", "refund issued", "resolved")
    assert report.status == ReportStatus.RESOLVED

    report = await booking_engine.reply_report(report.id, "admin-1", "", "closed")
    assert report.status == ReportStatus.CLOSED

    with pytest.raises(InvalidStateTransition):
        await booking_engine.reply_report(report.id, "admin-1", "reopening", "open")
    with pytest.raises(InvalidStateTransition):
        await booking_engine.reply_report(report.id, "admin-1", "one more note")


@pytest.mark.asyncio
async def test_reply_without_status_keeps_status(booking_engine, delivered):
    delivery = await delivered()
    report = await booking_engine.file_report(delivery.id, "receiver-1", "attitude")

    report = await booking_engine.reply_report(report.id, "admin-1", "thanks, noted")

    assert report.status == ReportStatus.OPEN
    assert report.admin_reply == "thanks, noted"


@pytest.mark.asyncio
async def test_report_cannot_skip_to_closed(booking_engine, delivered):
    delivery = await delivered()
    report = await booking_engine.file_report(delivery.id, "receiver-1", "damage", "box was crushed")

    with pytest.raises(InvalidStateTransition):
        await booking_engine.reply_report(report.id, "admin-1", "closing", "closed")


@pytest.mark.asyncio
async def test_reply_with_unknown_status(booking_engine, delivered):
    delivery = await delivered()
    report = await booking_engine.file_report(delivery.id, "receiver-1", "other", "something else")

    with pytest.raises(ValidationError):
        await booking_engine.reply_report(report.id, "admin-1", "hm", "escalated")


@pytest.mark.asyncio
@pytest.mark.parametrize("reason, details", [("stolen", None), ("late", "bad")])
async def test_file_report_validation(booking_engine, delivered, reason, details):
    """
    Test case 3: Unknown reasons and too-short details are rejected.
    """
    delivery = await delivered()

    with pytest.raises(ValidationError):
        await booking_engine.file_report(delivery.id, "receiver-1", reason, details)


@pytest.mark.asyncio
async def test_file_report_unknown_delivery(booking_engine):
    with pytest.raises(NotFound):
        await booking_engine.file_report("missing", "receiver-1", "late")


@pytest.mark.asyncio
async def test_list_reports_for_delivery(booking_engine, delivered):
    delivery = await delivered()
    await booking_engine.file_report(delivery.id, "receiver-1", "late")
    await booking_engine.file_report(delivery.id, "shipper-1", "other", "receiver not home")

    reports = await booking_engine.list_reports(delivery.id)

    assert len(reports) == 2
    assert {r.reporter_id for r in reports} == {"receiver-1", "shipper-1"}


@pytest.mark.parametrize("label, code", [
    ("  Late ", "late"),
    ("In Progress", "in_progress"),
    (None, ""),
    ("Giao muộn", "late"),
    ("trễ", "late"),
    ("thiếu hàng", "missing"),
    ("thái độ", "attitude"),
    ("hư hỏng", "damage"),
    (" hỏng ", "damage"),
    ("khác", "other"),
])
def test_normalize_reason(label, code):
    assert normalize_reason(label) == code


@pytest.mark.asyncio
async def test_file_report_with_client_label(booking_engine, delivered):
    delivery = await delivered()

    report = await booking_engine.file_report(delivery.id, "receiver-1", "thiếu hàng", "thiếu 2 hộp cơm")

    assert report.reason == "missing"
