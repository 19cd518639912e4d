"""Appointment lifecycle and conflict-free slot booking.

A slot is (doctor, date, time). The ``appointments`` table carries a partial
unique index over active appointments, so the insert itself is the
check-and-insert: a second active booking for the same slot fails with an
IntegrityError inside the same statement. Within one process, proposals for
the same slot are additionally serialized on a keyed lock so contending
requests fail fast instead of waiting on the store.
"""
from datetime import date, datetime, time
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence
import logging

from ..core.database import store_errors
from ..core.exceptions import (
    AuthorizationError, ConflictError, InvalidTransitionError, NotFoundError,
    StateError, ValidationError
)
from ..core.locks import KeyedLock
from ..core.security import Principal, UserRole
from ..models.appointment import (
    Appointment, AppointmentPriority, AppointmentStatus, AppointmentType, TERMINAL_STATUSES
)
from ..models.notification import NotificationCategory, NotificationPriority
from ..schemas.appointment import AppointmentResponse, TIME_SLOT_PATTERN
from ..schemas.notification import NotificationEvent
from ..schemas.triage import TriageResult, UrgencyLevel
from .doctor_directory import DoctorDirectory
from .notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

_URGENCY_PRIORITY = {
    UrgencyLevel.EMERGENCY: AppointmentPriority.URGENT,
    UrgencyLevel.URGENT: AppointmentPriority.HIGH,
    UrgencyLevel.HIGH: AppointmentPriority.HIGH,
    UrgencyLevel.MEDIUM: AppointmentPriority.MEDIUM,
    UrgencyLevel.LOW: AppointmentPriority.LOW,
}


def priority_for_urgency(urgency: Optional[UrgencyLevel]) -> AppointmentPriority:
    if urgency is None:
        return AppointmentPriority.MEDIUM
    return _URGENCY_PRIORITY[UrgencyLevel(urgency)]


def slot_start(appointment_date: date, appointment_time: str) -> datetime:
    if not isinstance(appointment_time, str) or not TIME_SLOT_PATTERN.match(appointment_time):
        raise ValidationError("appointment_time must be HH:MM")
    return datetime.combine(appointment_date, time.fromisoformat(appointment_time))


class SlotScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        directory: DoctorDirectory,
        events: NotificationDispatcher,
        clock: Callable[[], datetime] = datetime.now,
        duration_minutes: int = 30,
    ):
        self._session_factory = session_factory
        self.directory = directory
        self.events = events
        self._clock = clock
        self.duration_minutes = duration_minutes
        self._slot_locks = KeyedLock()
        self._rating_locks = KeyedLock()

    # Booking

    def propose_booking(
        self,
        doctor_id: int,
        patient_id: int,
        appointment_date: date,
        appointment_time: str,
        appointment_type: AppointmentType = AppointmentType.CONSULTATION,
        symptoms: Optional[Sequence[str]] = None,
        notes: Optional[str] = None,
        triage: Optional[TriageResult] = None,
    ) -> AppointmentResponse:
        """Book a slot, or raise ConflictError if it already has an active appointment."""
        if not isinstance(appointment_date, date):
            raise ValidationError("appointment_date must be a calendar date")
        start = slot_start(appointment_date, appointment_time)
        if start <= self._clock():
            raise ValidationError("Appointment time must be in the future")
        try:
            appointment_type = AppointmentType(appointment_type)
        except ValueError:
            raise ValidationError(f"Invalid appointment type '{appointment_type}'") from None

        doctor = self.directory.get_by_id(doctor_id)
        if not doctor.approved:
            raise ValidationError("Doctor not found or not approved")

        urgency = triage.urgency_level if triage is not None else None
        fields = dict(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            duration_minutes=self.duration_minutes,
            status=AppointmentStatus.SCHEDULED,
            appointment_type=appointment_type,
            priority=priority_for_urgency(urgency),
            urgency_level=urgency.value if urgency is not None else None,
            symptoms=list(symptoms) if symptoms else None,
            notes=notes,
        )

        key = (doctor_id, appointment_date, appointment_time)
        with self._slot_locks.hold(key), store_errors("propose_booking"):
            try:
                appointment = self._insert(fields)
            except OperationalError as exc:
                logger.warning(f"Transient store error booking slot {key}, retrying once: {exc}")
                appointment = self._insert(fields)

        logger.info(
            f"Appointment {appointment.id} booked: doctor {doctor_id} on "
            f"{appointment_date} at {appointment_time} for patient {patient_id}"
        )
        self._emit_booking(appointment, triage)
        return appointment

    def _insert(self, fields: dict) -> AppointmentResponse:
        with self._session_factory() as db:
            appointment = Appointment(**fields)
            db.add(appointment)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(
                    f"Slot conflict for doctor {fields['doctor_id']} on "
                    f"{fields['appointment_date']} at {fields['appointment_time']}"
                )
                raise ConflictError("Time slot already booked") from None
            db.refresh(appointment)
            return AppointmentResponse.model_validate(appointment)

    # Lifecycle

    def update_status(
        self,
        appointment_id: int,
        requested_by: Principal,
        new_status: AppointmentStatus,
        notes: Optional[str] = None,
    ) -> AppointmentResponse:
        try:
            new_status = AppointmentStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status '{new_status}'") from None

        def apply_notes(appointment: Appointment) -> None:
            if notes:
                appointment.notes = notes

        return self._change_status(appointment_id, requested_by, new_status, apply_notes)

    def cancel(
        self,
        appointment_id: int,
        requested_by: Principal,
        reason: Optional[str] = None,
    ) -> AppointmentResponse:
        def append_reason(appointment: Appointment) -> None:
            if reason:
                appointment.notes = (appointment.notes or "") + f"\nCancellation reason: {reason}"

        return self._change_status(
            appointment_id, requested_by, AppointmentStatus.CANCELLED, append_reason, reason=reason
        )

    def _change_status(
        self,
        appointment_id: int,
        requested_by: Principal,
        new_status: AppointmentStatus,
        edit: Callable[[Appointment], None],
        reason: Optional[str] = None,
    ) -> AppointmentResponse:
        with store_errors("update_status"):
            try:
                appointment, previous = self._transition(appointment_id, requested_by, new_status, edit)
            except StaleDataError:
                logger.warning(f"Appointment {appointment_id} changed concurrently, retrying once")
                try:
                    appointment, previous = self._transition(appointment_id, requested_by, new_status, edit)
                except StaleDataError:
                    raise ConflictError("Appointment was modified concurrently, please retry") from None

        logger.info(
            f"Appointment {appointment_id} {previous.value} -> {new_status.value} "
            f"by {requested_by.kind.value}:{requested_by.id}"
        )
        self._emit_status_change(appointment, requested_by, reason)
        return appointment

    def _transition(self, appointment_id, requested_by, new_status, edit):
        with self._session_factory() as db:
            appointment = self._load(db, appointment_id)
            self._authorize_transition(appointment, requested_by, new_status)

            current = appointment.status
            if current in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Appointment is {current.value} and can no longer change"
                )
            if new_status not in TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot move appointment from {current.value} to {new_status.value}"
                )
            if new_status == AppointmentStatus.NO_SHOW:
                start = slot_start(appointment.appointment_date, appointment.appointment_time)
                if start >= self._clock():
                    raise InvalidTransitionError("Cannot mark a future appointment as no-show")

            appointment.status = new_status
            edit(appointment)
            db.commit()
            db.refresh(appointment)
            return AppointmentResponse.model_validate(appointment), current

    @staticmethod
    def _authorize_transition(
        appointment: Appointment, principal: Principal, new_status: AppointmentStatus
    ) -> None:
        if principal.is_admin:
            return
        if principal.kind == UserRole.DOCTOR and appointment.doctor_id == principal.id:
            return
        if principal.kind == UserRole.PATIENT and appointment.patient_id == principal.id:
            if new_status == AppointmentStatus.CANCELLED:
                return
            raise AuthorizationError("Patients may only cancel their appointments")
        raise AuthorizationError("Not authorized to update this appointment")

    # Feedback

    def rate(
        self,
        appointment_id: int,
        patient_id: int,
        rating: int,
        review: Optional[str] = None,
    ) -> AppointmentResponse:
        """Rate a completed appointment and refresh the doctor's aggregate rating.

        The rating is committed before the directory write. If that write fails the
        caller sees UpstreamUnavailableError; calling again with the same rating
        recomputes the aggregate from every rated appointment.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        with store_errors("rate_appointment"):
            with self._session_factory() as db:
                appointment = self._load(db, appointment_id)
                if appointment.patient_id != patient_id:
                    raise AuthorizationError("Not authorized to rate this appointment")
                if appointment.status != AppointmentStatus.COMPLETED:
                    raise StateError("Can only rate completed appointments")
                doctor_id = appointment.doctor_id

            with self._rating_locks.hold(doctor_id):
                with self._session_factory() as db:
                    appointment = self._load(db, appointment_id)
                    appointment.rating = rating
                    if review:
                        appointment.review = review
                    db.commit()
                    db.refresh(appointment)
                    rated = AppointmentResponse.model_validate(appointment)

                    average, count = db.query(
                        func.avg(Appointment.rating), func.count(Appointment.rating)
                    ).filter(
                        Appointment.doctor_id == doctor_id,
                        Appointment.rating.isnot(None),
                    ).one()

                self.directory.update_rating(doctor_id, float(average), int(count))

        logger.info(f"Doctor {doctor_id} rating recomputed: {float(average):.2f} over {count} review(s)")
        return rated

    # Queries

    def get(self, appointment_id: int, principal: Principal) -> AppointmentResponse:
        with store_errors("get_appointment"), self._session_factory() as db:
            appointment = self._load(db, appointment_id)
            if not (
                principal.is_admin
                or (principal.kind == UserRole.PATIENT and appointment.patient_id == principal.id)
                or (principal.kind == UserRole.DOCTOR and appointment.doctor_id == principal.id)
            ):
                raise AuthorizationError("Not authorized to view this appointment")
            return AppointmentResponse.model_validate(appointment)

    def list_for(
        self, principal: Principal, status: Optional[AppointmentStatus] = None
    ) -> List[AppointmentResponse]:
        with store_errors("list_appointments"), self._session_factory() as db:
            query = db.query(Appointment)
            if principal.kind == UserRole.PATIENT:
                query = query.filter(Appointment.patient_id == principal.id)
            elif principal.kind == UserRole.DOCTOR:
                query = query.filter(Appointment.doctor_id == principal.id)
            if status is not None:
                query = query.filter(Appointment.status == AppointmentStatus(status))
            appointments = query.order_by(
                Appointment.appointment_date.desc(),
                Appointment.appointment_time.desc(),
                Appointment.id.desc(),
            ).all()
            return [AppointmentResponse.model_validate(a) for a in appointments]

    @staticmethod
    def _load(db: Session, appointment_id: int) -> Appointment:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    # Lifecycle events

    def _emit_booking(self, appointment: AppointmentResponse, triage: Optional[TriageResult]) -> None:
        when = f"{appointment.appointment_date:%b %d, %Y} at {appointment.appointment_time}"
        metadata = {
            "appointment_id": appointment.id,
            "patient_id": appointment.patient_id,
            "appointment_date": slot_start(appointment.appointment_date, appointment.appointment_time).isoformat(),
        }
        title = "New Appointment Request"
        message = f"New appointment request from patient {appointment.patient_id} for {when}"
        priority = NotificationPriority.MEDIUM

        if triage is not None:
            title = "New Recommended Appointment"
            message += ", matched from symptom analysis"
            metadata["symptoms"] = list(triage.symptoms)
            metadata["recommendation"] = {
                "recommended_specialization": triage.top_specialization,
                "confidence": triage.confidence,
                "urgency_level": triage.urgency_level.value,
            }
            if triage.urgency_level in (UrgencyLevel.URGENT, UrgencyLevel.EMERGENCY):
                priority = NotificationPriority.HIGH

        self.events.publish(NotificationEvent(
            recipient_id=appointment.doctor_id,
            recipient_kind=UserRole.DOCTOR,
            title=title,
            message=message,
            category=NotificationCategory.APPOINTMENT,
            priority=priority,
            action_url=f"/doctor/appointments/{appointment.id}",
            metadata=metadata,
        ))

    def _emit_status_change(
        self, appointment: AppointmentResponse, actor: Principal, reason: Optional[str]
    ) -> None:
        if actor.kind == UserRole.PATIENT:
            recipient_id, recipient_kind = appointment.doctor_id, UserRole.DOCTOR
        else:
            recipient_id, recipient_kind = appointment.patient_id, UserRole.PATIENT

        metadata = {
            "appointment_id": appointment.id,
            "status": appointment.status.value,
            "updated_by": actor.kind.value,
        }
        if appointment.status == AppointmentStatus.CANCELLED:
            title = "Appointment Cancelled"
            message = f"Appointment has been cancelled by the {actor.kind.value}"
            metadata["reason"] = reason
        else:
            title = "Appointment Status Updated"
            message = f"Your appointment status has been updated to {appointment.status.value}"

        self.events.publish(NotificationEvent(
            recipient_id=recipient_id,
            recipient_kind=recipient_kind,
            title=title,
            message=message,
            category=NotificationCategory.APPOINTMENT,
            priority=NotificationPriority.MEDIUM,
            action_url=f"/{recipient_kind.value}/appointments/{appointment.id}",
            metadata=metadata,
        ))
