import math
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["USER", "PROVIDER", "ADMIN"]

BookingStatus = Literal["PENDING", "CONFIRMED", "COMPLETED", "CANCELLED"]

PaymentStatus = Literal["PENDING", "COMPLETED", "FAILED", "REFUNDED"]

NotificationType = Literal["EMAIL", "SMS", "IN_APP", "PUSH"]

NotificationStatus = Literal["PENDING", "SENT", "FAILED"]


class Actor(BaseModel):
    user_id: str
    role: Role = "USER"

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


class UserContact(BaseModel):
    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Role = "USER"


class ProviderInfo(BaseModel):
    id: str
    user_id: str
    name: str
    is_active: bool = True
    rating: float = 0.0
    review_count: int = 0


class ServiceInfo(BaseModel):
    id: str
    name: str
    duration_minutes: int = Field(gt=0)
    base_price: Decimal
    is_active: bool = True


class AvailabilityWindow(BaseModel):
    id: str
    provider_id: str
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_active: bool = True


class Booking(BaseModel):
    id: str
    user_id: str
    provider_id: str
    service_id: str
    booking_date: str
    booking_time: str
    timezone: str
    duration_minutes: int
    total_amount: Decimal
    payment_status: PaymentStatus = "PENDING"
    status: BookingStatus = "PENDING"
    special_instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str
    updated_at: str


class BookingCreateRequest(BaseModel):
    user_id: str
    provider_id: str
    service_id: str
    date: str
    time: str
    timezone: str = "Asia/Kolkata"
    special_instructions: Optional[str] = None


class BookingActionRequest(BaseModel):
    actor_user_id: str


class BookingCancelRequest(BaseModel):
    actor_user_id: str
    reason: str


class BookingRescheduleRequest(BaseModel):
    actor_user_id: str
    date: str
    time: str
    timezone: str = "Asia/Kolkata"
    reason: Optional[str] = None


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


class BookingPage(BaseModel):
    bookings: list[Booking]
    pagination: Pagination


class SlotAvailability(BaseModel):
    date: str
    time: str
    available: bool
    reason: Optional[str] = None


class ReviewCreateRequest(BaseModel):
    actor_user_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class Review(BaseModel):
    id: str
    booking_id: str
    user_id: str
    provider_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: str


class NotificationEvent(BaseModel):
    user_id: str
    booking_id: Optional[str] = None
    type: str = "IN_APP"
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    booking_id: Optional[str] = None
    type: str
    title: str
    message: str
    status: NotificationStatus = "PENDING"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sent_at: Optional[str] = None
    read_at: Optional[str] = None
    created_at: str


class NotificationPage(BaseModel):
    notifications: list[NotificationRecord]
    pagination: Pagination


class BulkNotificationRequest(BaseModel):
    actor_user_id: str
    user_ids: list[str]
    type: NotificationType = "IN_APP"
    title: str
    message: str


class UnreadCount(BaseModel):
    user_id: str
    unread: int


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "slotwise-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: Role = "USER"
