"""Doctor Directory collaborator.

The triage core only reads doctors (plus the rating write-back and the
best-effort online flag). ``DoctorDirectory`` is the interface the matcher
and scheduler depend on; ``SqlDoctorDirectory`` backs it with the
``doctors`` table.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from sqlalchemy.orm import Session, sessionmaker
from typing import Callable, List
import logging

from ..core.database import store_errors
from ..core.exceptions import NotFoundError
from ..models.doctor import ApprovalStatus, Doctor
from ..schemas.doctor import DoctorProfile

logger = logging.getLogger(__name__)


class DoctorDirectory(ABC):
    @abstractmethod
    def find_by_specialization(
        self, specialization: str, approved_only: bool = True, online_only: bool = False
    ) -> List[DoctorProfile]:
        """Doctors in a specialization, ordered by rating desc then id asc."""

    @abstractmethod
    def get_by_id(self, doctor_id: int) -> DoctorProfile:
        """Raise NotFoundError when the doctor does not exist."""

    @abstractmethod
    def update_rating(self, doctor_id: int, rating: float, total_reviews: int) -> None:
        ...

    @abstractmethod
    def set_online(self, doctor_id: int, online: bool) -> None:
        ...


class SqlDoctorDirectory(DoctorDirectory):
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self._session_factory = session_factory
        self._clock = clock

    def find_by_specialization(self, specialization, approved_only=True, online_only=False):
        with store_errors("find_by_specialization"), self._session_factory() as db:
            query = db.query(Doctor).filter(Doctor.specialization == specialization)
            if approved_only:
                query = query.filter(Doctor.status == ApprovalStatus.APPROVED)
            if online_only:
                query = query.filter(Doctor.is_online.is_(True))
            doctors = query.order_by(Doctor.rating.desc(), Doctor.id.asc()).all()
            return [DoctorProfile.model_validate(d) for d in doctors]

    def get_by_id(self, doctor_id):
        with store_errors("get_doctor"), self._session_factory() as db:
            doctor = db.get(Doctor, doctor_id)
            if doctor is None:
                raise NotFoundError(f"Doctor {doctor_id} not found")
            return DoctorProfile.model_validate(doctor)

    def update_rating(self, doctor_id, rating, total_reviews):
        with store_errors("update_rating"), self._session_factory() as db:
            doctor = self._load(db, doctor_id)
            doctor.rating = rating
            doctor.total_reviews = total_reviews
            db.commit()

    def set_online(self, doctor_id, online):
        with store_errors("set_online"), self._session_factory() as db:
            doctor = self._load(db, doctor_id)
            doctor.is_online = online
            doctor.last_active = self._clock()
            db.commit()
        logger.info(f"Doctor {doctor_id} is now {'online' if online else 'offline'}")

    @staticmethod
    def _load(db: Session, doctor_id: int) -> Doctor:
        doctor = db.get(Doctor, doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        return doctor
