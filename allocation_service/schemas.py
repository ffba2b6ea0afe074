from typing import Optional
from pydantic import BaseModel
import datetime

from .models import AssignmentKind, AssignmentStatus, BookingStatus, ResourceKind


class BookingBase(BaseModel):
    start_time: datetime.datetime
    end_time: datetime.datetime
    # Guests for tables and halls, ignored for staff shifts
    party_size: Optional[int] = None
    notes: Optional[str] = None


class BookingCreate(BookingBase):
    # Leave empty to let the service pick the smallest free resource
    resource_id: Optional[int] = None


class BookingRead(BookingBase):
    id: int
    resource_kind: ResourceKind
    resource_id: int
    status: BookingStatus
    booked_by: Optional[int] = None
    created_at: datetime.datetime
    updated_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True


class RescheduleRequest(BaseModel):
    start_time: datetime.datetime
    end_time: datetime.datetime


class AvailabilityRead(BaseModel):
    resource_kind: ResourceKind
    resource_id: int
    start_time: datetime.datetime
    end_time: datetime.datetime
    available: bool


class AssignmentCreate(BaseModel):
    assignment_kind: AssignmentKind
    detail: str
    quantity: int = 1


class AssignmentRead(AssignmentCreate):
    id: int
    booking_id: int
    status: AssignmentStatus
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class ClearedRead(BaseModel):
    booking_id: int
    cancelled: int


class AssignmentStatusUpdate(BaseModel):
    status: AssignmentStatus


class SlotRead(BaseModel):
    start_time: datetime.datetime
    end_time: datetime.datetime
