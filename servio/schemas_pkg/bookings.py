from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Location(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None


class BookingCreateRequest(BaseModel):
    services: List[int] = Field(..., min_length=1)
    professional_id: Optional[int] = None
    scheduled_date: Optional[datetime] = None
    scheduled_time: Optional[str] = None
    location: Optional[Location] = None
    payment_method: str = "gateway"   # gateway | cod
    notes: Optional[str] = None


class Reschedule(BaseModel):
    date: datetime
    time: Optional[str] = None


class BookingStatusUpdate(BaseModel):
    status: str
    message: Optional[str] = None
    reschedule: Optional[Reschedule] = None
    cancellation_reason: Optional[str] = None
    professional_id: Optional[int] = None   # admin only
    expected_version: Optional[int] = None


class TrackingUpdateRequest(BaseModel):
    status: str
    message: Optional[str] = None
    location: Optional[Location] = None
    expected_version: Optional[int] = None


class RatingRequest(BaseModel):
    score: int
    review: Optional[str] = None


class TrackingUpdateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    message: str
    updated_by: Optional[int] = None
    location: Optional[Dict[str, Any]] = None
    timestamp: datetime


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    professional_id: Optional[int] = None
    services: List[Dict[str, Any]] = []

    scheduled_date: Optional[datetime] = None
    scheduled_time: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

    status: str
    price: float
    total_amount: float
    payment_method: str
    payment_status: str
    payment_id: Optional[int] = None

    rating_score: Optional[int] = None
    rating_review: Optional[str] = None
    rated_at: Optional[datetime] = None

    service_started_at: Optional[datetime] = None
    service_completed_at: Optional[datetime] = None

    tracking_updates: List[TrackingUpdateOut] = []
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
