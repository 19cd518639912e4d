from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Tuple
from enum import Enum

from .doctor import DoctorProfile


class UrgencyLevel(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _URGENCY_RANK[self]


_URGENCY_RANK = {
    UrgencyLevel.LOW: 0,
    UrgencyLevel.MEDIUM: 1,
    UrgencyLevel.HIGH: 2,
    UrgencyLevel.URGENT: 3,
    UrgencyLevel.EMERGENCY: 4,
}


class SpecializationScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    specialization: str
    score: float
    confidence: int


class UrgencyHit(BaseModel):
    model_config = ConfigDict(frozen=True)

    keyword: str
    urgency: UrgencyLevel
    specialization: str


class TriageAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_symptoms: int
    matched_categories: int
    top_recommendation: Optional[str] = None


class TriageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    symptoms: Tuple[str, ...]
    recommended_specializations: Tuple[SpecializationScore, ...]
    urgency_level: UrgencyLevel
    confidence: int
    urgency_details: Tuple[UrgencyHit, ...] = ()
    analysis: TriageAnalysis
    is_fallback: bool = False

    @property
    def top_specialization(self) -> Optional[str]:
        if not self.recommended_specializations:
            return None
        return self.recommended_specializations[0].specialization


class HealthRecommendation(BaseModel):
    recommendation: str
    action_plan: List[str]
    urgency_level: UrgencyLevel
    best_match: Optional[SpecializationScore] = None
    additional_notes: str = ""


# Request / response bodies

class SymptomRequest(BaseModel):
    symptoms: List[str] = Field(..., description="Free-text symptom phrases")
    age: Optional[int] = Field(None, ge=0, le=150)


class SpecializationDoctors(BaseModel):
    specialization: str
    confidence: int
    doctors: List[DoctorProfile]


class AnalyzeResponse(BaseModel):
    analysis: TriageResult
    is_emergency: bool
    recommended_doctors: List[SpecializationDoctors]
    recommendation: HealthRecommendation


class MatchResponse(BaseModel):
    analysis: TriageResult
    doctor: DoctorProfile
    specialization: str
    online: bool
    reason: str


class SymptomList(BaseModel):
    symptoms: List[str]


class SuggestionList(BaseModel):
    suggestions: List[str]

