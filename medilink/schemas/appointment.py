from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import date, datetime
from typing import List, Optional
import re

from ..models.appointment import AppointmentStatus, AppointmentType, AppointmentPriority

TIME_SLOT_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def check_time_slot(v: str) -> str:
    if not TIME_SLOT_PATTERN.match(v):
        raise ValueError("appointment_time must be HH:MM")
    return v


class AppointmentCreate(BaseModel):
    doctor_id: int
    appointment_date: date
    appointment_time: str = Field(..., description="Time of day, HH:MM")
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    symptoms: List[str] = []
    notes: Optional[str] = None

    @field_validator("appointment_time")
    @classmethod
    def validate_time_slot(cls, v: str) -> str:
        return check_time_slot(v)


class SymptomBookingCreate(BaseModel):
    symptoms: List[str]
    appointment_date: date
    appointment_time: str
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    notes: Optional[str] = None

    @field_validator("appointment_time")
    @classmethod
    def validate_time_slot(cls, v: str) -> str:
        return check_time_slot(v)


class StatusUpdate(BaseModel):
    status: AppointmentStatus
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RatingCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    doctor_id: int
    appointment_date: date
    appointment_time: str
    duration_minutes: int
    status: AppointmentStatus
    appointment_type: AppointmentType
    priority: AppointmentPriority
    urgency_level: Optional[str] = None
    symptoms: Optional[List[str]] = None
    notes: Optional[str] = None
    prescription_id: Optional[int] = None
    rating: Optional[int] = None
    review: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SymptomBookingResponse(BaseModel):
    appointment: AppointmentResponse
    specialization: str
    reason: str
