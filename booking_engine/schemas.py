from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Any, Literal
from datetime import datetime
from booking_engine.states import BookingStatus, DeliveryStatus, ReportStatus, FoodItemStatus


class BookingCreate(BaseModel):
    food_item_id: str = Field(..., example="food-rice-01")
    qty: int = Field(..., gt=0, example=3)
    method: Literal["pickup", "meet", "delivery"] = "pickup"
    pickup_point: Optional[str] = None
    note: Optional[str] = None


class BookingDecision(BaseModel):
    outcome: Literal["accept", "reject"]


class BookingRead(BaseModel):
    id: str
    food_item_id: str
    receiver_id: str
    qty: int
    status: BookingStatus
    method: str
    pickup_point: Optional[str] = None
    note: Optional[str] = None
    cancelled_by: Optional[str] = None
    created_at: datetime
    decision_at: Optional[datetime] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class DeliveryTransition(BaseModel):
    action: Literal["assign", "accept", "start_pickup", "deliver", "delivered", "cancel"]
    shipper_id: Optional[str] = None
    pickup_ref: Optional[str] = None
    dropoff_ref: Optional[str] = None
    reason: Optional[str] = None


class DeliveryRead(BaseModel):
    id: str
    booking_id: str
    qty: int
    shipper_id: Optional[str] = None
    pickup_ref: Optional[str] = None
    dropoff_ref: Optional[str] = None
    status: DeliveryStatus
    cancel_reason: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    picking_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ReviewRead(BaseModel):
    delivery_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None

    class Config:
        from_attributes = True


class ReportCreate(BaseModel):
    reason: str = Field(..., example="late")
    details: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class ReportReply(BaseModel):
    reply: str = ""
    status: Optional[str] = None


class ReportRead(BaseModel):
    id: str
    delivery_id: str
    reporter_id: str
    reason: str
    details: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    status: ReportStatus
    admin_id: Optional[str] = None
    admin_reply: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator('images', mode='before')
    @classmethod
    def parse_images(cls, v: Any) -> List[str]:
        return v or []

    class Config:
        from_attributes = True


class FoodAvailability(BaseModel):
    id: str
    qty_total: int
    qty_reserved: int
    qty_available: int
    status: FoodItemStatus
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AutoCancelRequest(BaseModel):
    pending_hours: float = Field(24, ge=1)


class AutoCancelResult(BaseModel):
    ok: bool = True
    expired: int
    expired_items: int
    booking_ids: List[str]
    failed_booking_ids: List[str] = Field(default_factory=list)
    cutoff: datetime
    hours: float


class BookingPage(BaseModel):
    items: List[BookingRead]
    page: int
    page_size: int
    total: int


class DeliveryPage(BaseModel):
    items: List[DeliveryRead]
    page: int
    page_size: int
    total: int
