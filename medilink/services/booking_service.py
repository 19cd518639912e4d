"""Symptom-driven booking: triage, match a doctor, then book the slot."""
from datetime import date
from typing import Optional, Sequence
import logging

from ..models.appointment import AppointmentType
from ..schemas.appointment import SymptomBookingResponse
from .matching_service import DoctorMatcher
from .scheduler_service import SlotScheduler
from .triage_service import TriageClassifier

logger = logging.getLogger(__name__)


class SymptomBookingService:
    def __init__(self, classifier: TriageClassifier, matcher: DoctorMatcher, scheduler: SlotScheduler):
        self.classifier = classifier
        self.matcher = matcher
        self.scheduler = scheduler

    def book(
        self,
        patient_id: int,
        symptoms: Sequence[str],
        appointment_date: date,
        appointment_time: str,
        appointment_type: AppointmentType = AppointmentType.CONSULTATION,
        notes: Optional[str] = None,
    ) -> SymptomBookingResponse:
        triage = self.classifier.analyze(symptoms)
        selected = self.matcher.match(triage)
        logger.info(
            f"Symptom booking for patient {patient_id}: {selected.specialization} "
            f"(urgency={triage.urgency_level.value}, confidence={triage.confidence})"
        )

        appointment = self.scheduler.propose_booking(
            doctor_id=selected.doctor.id,
            patient_id=patient_id,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            appointment_type=appointment_type,
            symptoms=triage.symptoms,
            notes=notes,
            triage=triage,
        )
        return SymptomBookingResponse(
            appointment=appointment,
            specialization=selected.specialization,
            reason=selected.reason,
        )
