from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from ...api.deps import get_current_principal, get_patient, get_services, rate_limit_check
from ...core.security import Principal
from ...models.appointment import AppointmentStatus
from ...schemas.appointment import (
    AppointmentCreate, AppointmentResponse, CancelRequest, RatingCreate,
    StatusUpdate, SymptomBookingCreate, SymptomBookingResponse
)
from ...services.connection_registry import appointment_room
from ...services.container import ServiceContainer

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def _announce_status(services: ServiceContainer, appointment: AppointmentResponse, principal: Principal):
    """Tell everyone watching the appointment room about the new status."""
    services.registry.broadcast_room(appointment_room(appointment.id), {
        "type": "appointment_status_changed",
        "appointment_id": appointment.id,
        "status": appointment.status.value,
        "updated_by": principal.kind.value,
    })


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    booking: AppointmentCreate,
    patient: Principal = Depends(get_patient),
    services: ServiceContainer = Depends(get_services),
    _: None = Depends(rate_limit_check)
):
    """Book a specific doctor's slot."""
    return services.scheduler.propose_booking(
        doctor_id=booking.doctor_id,
        patient_id=patient.id,
        appointment_date=booking.appointment_date,
        appointment_time=booking.appointment_time,
        appointment_type=booking.appointment_type,
        symptoms=booking.symptoms,
        notes=booking.notes,
    )


@router.post("/from-symptoms", response_model=SymptomBookingResponse, status_code=status.HTTP_201_CREATED)
def book_from_symptoms(
    booking: SymptomBookingCreate,
    patient: Principal = Depends(get_patient),
    services: ServiceContainer = Depends(get_services),
    _: None = Depends(rate_limit_check)
):
    """Triage the symptoms, match a doctor and book the slot in one step."""
    return services.booking.book(
        patient_id=patient.id,
        symptoms=booking.symptoms,
        appointment_date=booking.appointment_date,
        appointment_time=booking.appointment_time,
        appointment_type=booking.appointment_type,
        notes=booking.notes,
    )


@router.get("", response_model=List[AppointmentResponse])
def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    return services.scheduler.list_for(principal, status_filter)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    return services.scheduler.get(appointment_id, principal)


@router.patch("/{appointment_id}/status", response_model=AppointmentResponse)
def update_status(
    appointment_id: int,
    update: StatusUpdate,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    appointment = services.scheduler.update_status(
        appointment_id, principal, update.status, update.notes
    )
    _announce_status(services, appointment, principal)
    return appointment


@router.patch("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    request: CancelRequest,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    appointment = services.scheduler.cancel(appointment_id, principal, request.reason)
    _announce_status(services, appointment, principal)
    return appointment


@router.post("/{appointment_id}/rate", response_model=AppointmentResponse)
def rate_appointment(
    appointment_id: int,
    feedback: RatingCreate,
    patient: Principal = Depends(get_patient),
    services: ServiceContainer = Depends(get_services)
):
    return services.scheduler.rate(appointment_id, patient.id, feedback.rating, feedback.review)
