import asyncio
import logging
from datetime import timedelta
from typing import List, Optional
import uvicorn
from fastapi import FastAPI, Depends, Header, Request
from fastapi.responses import JSONResponse
from booking_engine.campaigns import MessagingCampaignClient
from booking_engine.config import SWEEP_ENABLED, setup_logging
from booking_engine.database import AsyncSessionLocal, init_db
from booking_engine.engine import BookingEngine
from booking_engine.errors import EngineError
from booking_engine.messaging import close_rabbitmq, publish_event, setup_rabbitmq
from booking_engine.schemas import (
    AutoCancelRequest, AutoCancelResult, BookingCreate, BookingDecision, BookingPage, BookingRead,
    DeliveryPage, DeliveryRead, DeliveryTransition, FoodAvailability, ReportCreate, ReportRead,
    ReportReply, ReviewCreate, ReviewRead,
)
from booking_engine.sweep import ExpirySweep

setup_logging()
logger = logging.getLogger("booking_service")

app = FastAPI(title="Booking Service")


@app.on_event("startup")
async def startup_event():
    await init_db()
    await setup_rabbitmq()
    app.state.engine = BookingEngine(
        AsyncSessionLocal,
        campaign_client=MessagingCampaignClient(),
        publisher=publish_event,
    )
    app.state.sweep_task = None
    if SWEEP_ENABLED:
        app.state.sweep_task = asyncio.create_task(ExpirySweep(app.state.engine).run_forever())


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "sweep_task", None)
    if task:
        task.cancel()
    await close_rabbitmq()


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.code, "message": exc.message})


def get_engine(request: Request) -> BookingEngine:
    return request.app.state.engine


@app.get("/health")
async def health():
    return {"status": "ok", "service": "booking"}


# Bookings

@app.post("/api/bookings", response_model=BookingRead, status_code=201)
async def create_booking(
    data: BookingCreate,
    x_user_id: str = Header(...),
    engine: BookingEngine = Depends(get_engine),
):
    booking = await engine.create_booking(
        x_user_id, data.food_item_id, data.qty,
        method=data.method, pickup_point=data.pickup_point, note=data.note,
    )
    return BookingRead.model_validate(booking)


@app.get("/api/bookings", response_model=BookingPage)
async def list_bookings(
    receiver_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    engine: BookingEngine = Depends(get_engine),
):
    items, total = await engine.list_bookings(receiver_id=receiver_id, status=status, page=page, page_size=page_size)
    return BookingPage(
        items=[BookingRead.model_validate(b) for b in items],
        page=max(1, page),
        page_size=min(100, max(1, page_size)),
        total=total,
    )


@app.get("/api/bookings/{booking_id}", response_model=BookingRead)
async def get_booking(booking_id: str, engine: BookingEngine = Depends(get_engine)):
    return BookingRead.model_validate(await engine.get_booking(booking_id))


@app.post("/api/bookings/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: str,
    x_user_id: str = Header(...),
    engine: BookingEngine = Depends(get_engine),
):
    return BookingRead.model_validate(await engine.cancel_booking(booking_id, x_user_id))


@app.post("/api/admin/bookings/{booking_id}/decision", response_model=BookingRead)
async def decide_booking(
    booking_id: str,
    data: BookingDecision,
    engine: BookingEngine = Depends(get_engine),
):
    return BookingRead.model_validate(await engine.decide_booking(booking_id, data.outcome))


@app.post("/api/admin/bookings/auto-cancel", response_model=AutoCancelResult)
async def auto_cancel(data: AutoCancelRequest, engine: BookingEngine = Depends(get_engine)):
    result = await ExpirySweep(engine).run_once(ttl=timedelta(hours=data.pending_hours))
    return AutoCancelResult(
        expired=len(result.expired_bookings),
        expired_items=result.expired_items,
        booking_ids=result.expired_bookings,
        failed_booking_ids=result.failed_bookings,
        cutoff=result.cutoff,
        hours=data.pending_hours,
    )


# Deliveries

@app.get("/api/deliveries", response_model=DeliveryPage)
async def list_deliveries(
    shipper_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    engine: BookingEngine = Depends(get_engine),
):
    statuses: List[str] = [s.strip() for s in status.split(",") if s.strip()] if status else []
    items, total = await engine.list_deliveries(shipper_id=shipper_id, status=statuses, page=page, page_size=page_size)
    return DeliveryPage(
        items=[DeliveryRead.model_validate(d) for d in items],
        page=max(1, page),
        page_size=min(100, max(1, page_size)),
        total=total,
    )


@app.get("/api/deliveries/{delivery_id}", response_model=DeliveryRead)
async def get_delivery(delivery_id: str, engine: BookingEngine = Depends(get_engine)):
    return DeliveryRead.model_validate(await engine.get_delivery(delivery_id))


@app.patch("/api/deliveries/{delivery_id}/status", response_model=DeliveryRead)
async def transition_delivery(
    delivery_id: str,
    data: DeliveryTransition,
    x_user_id: Optional[str] = Header(None),
    engine: BookingEngine = Depends(get_engine),
):
    delivery = await engine.transition_delivery(
        delivery_id,
        data.action,
        actor_id=x_user_id,
        shipper_id=data.shipper_id,
        pickup_ref=data.pickup_ref,
        dropoff_ref=data.dropoff_ref,
        reason=data.reason,
    )
    return DeliveryRead.model_validate(delivery)


@app.patch("/api/deliveries/{delivery_id}/review", response_model=ReviewRead)
async def review_delivery(
    delivery_id: str,
    data: ReviewCreate,
    x_user_id: str = Header(...),
    engine: BookingEngine = Depends(get_engine),
):
    review = await engine.review_delivery(delivery_id, x_user_id, data.rating, data.comment)
    return ReviewRead.model_validate(review)


# Reports

@app.post("/api/deliveries/{delivery_id}/reports", response_model=ReportRead, status_code=201)
async def file_report(
    delivery_id: str,
    data: ReportCreate,
    x_user_id: str = Header(...),
    engine: BookingEngine = Depends(get_engine),
):
    report = await engine.file_report(delivery_id, x_user_id, data.reason, data.details, data.images)
    return ReportRead.model_validate(report)


@app.get("/api/deliveries/{delivery_id}/reports", response_model=List[ReportRead])
async def list_reports(delivery_id: str, engine: BookingEngine = Depends(get_engine)):
    return [ReportRead.model_validate(r) for r in await engine.list_reports(delivery_id)]


@app.patch("/api/reports/{report_id}/reply", response_model=ReportRead)
async def reply_report(
    report_id: str,
    data: ReportReply,
    x_user_id: str = Header(...),
    engine: BookingEngine = Depends(get_engine),
):
    report = await engine.reply_report(report_id, x_user_id, data.reply, data.status)
    return ReportRead.model_validate(report)


# Ledger

@app.get("/api/foods/{item_id}/availability", response_model=FoodAvailability)
async def food_availability(item_id: str, engine: BookingEngine = Depends(get_engine)):
    return FoodAvailability.model_validate(await engine.availability(item_id))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
