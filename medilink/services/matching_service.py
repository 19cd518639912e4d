"""Doctor selection driven by a triage ranking."""
from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Sequence
import logging

from ..core.exceptions import NoAvailableDoctorError
from ..schemas.doctor import DoctorProfile
from ..schemas.triage import SpecializationDoctors, TriageResult
from .doctor_directory import DoctorDirectory

logger = logging.getLogger(__name__)


class SelectedDoctor(BaseModel):
    model_config = ConfigDict(frozen=True)

    doctor: DoctorProfile
    specialization: str
    online: bool
    fallback: bool = False

    @property
    def reason(self) -> str:
        label = self.specialization.replace("_", " ")
        return f"Matched based on {label} specialization"


def _best(doctors: Sequence[DoctorProfile]) -> Optional[DoctorProfile]:
    if not doctors:
        return None
    return min(doctors, key=lambda d: (-d.rating, d.id))


def _ranked(doctors: Sequence[DoctorProfile]) -> List[DoctorProfile]:
    return sorted(doctors, key=lambda d: (-d.rating, d.id))


class DoctorMatcher:
    def __init__(self, directory: DoctorDirectory, default_specialization: str):
        self.directory = directory
        self.default_specialization = default_specialization

    def _pick(self, specialization: str) -> Optional[SelectedDoctor]:
        online = _best(self.directory.find_by_specialization(
            specialization, approved_only=True, online_only=True
        ))
        if online is not None:
            return SelectedDoctor(doctor=online, specialization=specialization, online=True)

        anyone = _best(self.directory.find_by_specialization(
            specialization, approved_only=True, online_only=False
        ))
        if anyone is not None:
            return SelectedDoctor(doctor=anyone, specialization=specialization, online=anyone.is_online)

        return None

    def match(self, triage: TriageResult) -> SelectedDoctor:
        """Pick one doctor, preferring online specialists in ranking order."""
        tried = []
        for entry in triage.recommended_specializations:
            tried.append(entry.specialization)
            selected = self._pick(entry.specialization)
            if selected is not None:
                logger.info(
                    f"Matched doctor {selected.doctor.id} for {entry.specialization} "
                    f"(online={selected.online})"
                )
                return selected

        selected = None
        if self.default_specialization not in tried:
            selected = self._pick(self.default_specialization)
        if selected is not None:
            logger.info(f"Matched doctor {selected.doctor.id} from default category")
            return selected.model_copy(update={"fallback": True})

        logger.warning(f"No available doctor for {tried} or {self.default_specialization}")
        raise NoAvailableDoctorError()

    def recommend(self, triage: TriageResult, limit: int = 5) -> List[SpecializationDoctors]:
        """Approved doctors per ranked specialization, best rated first."""
        groups = []
        for entry in triage.recommended_specializations:
            doctors = self.directory.find_by_specialization(entry.specialization, approved_only=True)
            groups.append(SpecializationDoctors(
                specialization=entry.specialization,
                confidence=entry.confidence,
                doctors=_ranked(doctors)[:limit],
            ))
        return groups
