"""Rule-based symptom triage.

Classification is a fixed keyword-scoring procedure over an immutable
knowledge base: each specialization scores one point per keyword phrase
found in the symptom text and half a point per synonym. Matching is plain
substring containment on the lowercased, space-joined symptom phrases.
"""
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union
import json
import logging
import math

from ..core.exceptions import NoSymptomsError, ValidationError
from ..schemas.triage import (
    HealthRecommendation, SpecializationScore, TriageAnalysis,
    TriageResult, UrgencyHit, UrgencyLevel
)

logger = logging.getLogger(__name__)

DEFAULT_KNOWLEDGE_BASE = Path(__file__).resolve().parent.parent / "data" / "knowledge_base.json"

KEYWORD_WEIGHT = 1.0
SYNONYM_WEIGHT = 0.5
MAX_RECOMMENDATIONS = 3
FALLBACK_CONFIDENCE = 50
MAX_SUGGESTIONS = 10


def _normalize_phrases(values: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for value in values:
        phrase = value.strip().lower()
        if phrase and phrase not in seen:
            seen.append(phrase)
    return tuple(seen)


class SpecializationRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    keywords: Tuple[str, ...]
    urgency: Tuple[Tuple[str, UrgencyLevel], ...] = ()
    synonyms: Tuple[str, ...] = ()

    @field_validator("keywords", "synonyms", mode="before")
    @classmethod
    def normalize(cls, v):
        return _normalize_phrases(v)

    @field_validator("urgency", mode="before")
    @classmethod
    def normalize_urgency(cls, v):
        if isinstance(v, dict):
            v = v.items()
        return tuple((phrase.strip().lower(), level) for phrase, level in v)

    @model_validator(mode="after")
    def urgency_phrases_are_keywords(self):
        if not self.keywords:
            raise ValueError(f"specialization '{self.name}' has no keywords")
        unknown = [phrase for phrase, _ in self.urgency if phrase not in self.keywords]
        if unknown:
            raise ValueError(
                f"urgency phrases {unknown} of '{self.name}' are not among its keywords"
            )
        return self

    def urgency_of(self, keyword: str) -> Optional[UrgencyLevel]:
        for phrase, level in self.urgency:
            if phrase == keyword:
                return level
        return None


class KnowledgeBase(BaseModel):
    """Immutable classification table; declaration order breaks score ties."""
    model_config = ConfigDict(frozen=True)

    version: str = "unversioned"
    default_specialization: str
    specializations: Tuple[SpecializationRules, ...]

    @model_validator(mode="after")
    def check_names(self):
        names = [rules.name for rules in self.specializations]
        if len(names) != len(set(names)):
            raise ValueError("specialization names must be unique")
        if self.default_specialization not in names:
            raise ValueError(
                f"default specialization '{self.default_specialization}' is not declared"
            )
        return self

    @property
    def names(self) -> List[str]:
        return [rules.name for rules in self.specializations]

    def get(self, name: str) -> Optional[SpecializationRules]:
        for rules in self.specializations:
            if rules.name == name:
                return rules
        return None


def load_knowledge_base(path: Optional[Union[str, Path]] = None) -> KnowledgeBase:
    """Load the knowledge base from ``path`` or the packaged default."""
    source = Path(path) if path else DEFAULT_KNOWLEDGE_BASE
    raw = source.read_text(encoding="utf-8")

    kb = KnowledgeBase.model_validate(json.loads(raw))
    logger.info(
        f"Loaded triage knowledge base {kb.version} from {source} "
        f"({len(kb.specializations)} specializations)"
    )
    return kb


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class TriageClassifier:
    def __init__(self, knowledge_base: KnowledgeBase):
        self.kb = knowledge_base

    def analyze(self, symptoms: Sequence[str]) -> TriageResult:
        """Rank specializations and grade urgency for one symptom report."""
        if isinstance(symptoms, str):
            raise ValidationError("symptoms must be a list of phrases")

        phrases = tuple(
            s.strip() for s in (symptoms or []) if isinstance(s, str) and s.strip()
        )
        if not phrases:
            raise NoSymptomsError()

        text = " ".join(phrases).lower()

        scores: List[Tuple[str, float]] = []
        hits: List[UrgencyHit] = []
        for rules in self.kb.specializations:
            score = 0.0
            for keyword in rules.keywords:
                if keyword in text:
                    score += KEYWORD_WEIGHT
                    level = rules.urgency_of(keyword)
                    if level is not None:
                        hits.append(UrgencyHit(
                            keyword=keyword, urgency=level, specialization=rules.name
                        ))
            for synonym in rules.synonyms:
                if synonym in text:
                    score += SYNONYM_WEIGHT
            if score > 0:
                scores.append((rules.name, score))

        if not scores:
            return self._fallback(phrases)

        total = sum(score for _, score in scores)
        # sorted() is stable, so equal scores keep declaration order
        ranked = sorted(scores, key=lambda item: -item[1])[:MAX_RECOMMENDATIONS]
        recommended = tuple(
            SpecializationScore(
                specialization=name,
                score=score,
                confidence=_round_half_up(score / total * 100),
            )
            for name, score in ranked
        )

        urgency = UrgencyLevel.LOW
        for hit in hits:
            if hit.urgency.rank > urgency.rank:
                urgency = hit.urgency

        return TriageResult(
            symptoms=phrases,
            recommended_specializations=recommended,
            urgency_level=urgency,
            confidence=recommended[0].confidence,
            urgency_details=tuple(hits),
            analysis=TriageAnalysis(
                total_symptoms=len(phrases),
                matched_categories=len(ranked),
                top_recommendation=recommended[0].specialization,
            ),
        )

    def _fallback(self, phrases: Tuple[str, ...]) -> TriageResult:
        default = self.kb.default_specialization
        return TriageResult(
            symptoms=phrases,
            recommended_specializations=(
                SpecializationScore(specialization=default, score=0.0, confidence=FALLBACK_CONFIDENCE),
            ),
            urgency_level=UrgencyLevel.LOW,
            confidence=FALLBACK_CONFIDENCE,
            analysis=TriageAnalysis(
                total_symptoms=len(phrases),
                matched_categories=0,
                top_recommendation=default,
            ),
            is_fallback=True,
        )

    # Symptom catalogue

    def all_symptoms(self) -> List[str]:
        catalogue = set()
        for rules in self.kb.specializations:
            catalogue.update(rules.keywords)
        return sorted(catalogue)

    def symptoms_by_category(self, specialization: str) -> List[str]:
        rules = self.kb.get((specialization or "").lower())
        return list(rules.keywords) if rules else []

    def suggestions(self, query: str) -> List[str]:
        if not query or len(query.strip()) < 2:
            return []
        needle = query.strip().lower()
        return [s for s in self.all_symptoms() if needle in s][:MAX_SUGGESTIONS]


def is_emergency(result: TriageResult) -> bool:
    return result.urgency_level in (UrgencyLevel.EMERGENCY, UrgencyLevel.URGENT)


def health_recommendation(result: TriageResult, age: Optional[int] = None) -> HealthRecommendation:
    """Patient-facing advice for a triage result."""
    urgency = result.urgency_level
    best = result.recommended_specializations[0] if result.recommended_specializations else None

    if urgency == UrgencyLevel.EMERGENCY:
        text = ("URGENT: Seek immediate medical attention at the nearest emergency room "
                "or call emergency services.")
        plan = [
            "Call emergency services immediately",
            "Do not delay seeking medical care",
            "If possible, have someone accompany you",
            "Bring insurance card and identification",
        ]
    elif urgency == UrgencyLevel.URGENT:
        text = "Urgent care recommended. Please seek medical attention within 24 hours."
        plan = [
            "Contact a healthcare provider today",
            "Consider visiting urgent care if your primary care provider is unavailable",
            "Monitor symptoms closely",
            "Rest and stay hydrated",
        ]
    elif urgency == UrgencyLevel.HIGH:
        text = ("Schedule an appointment with a healthcare provider as soon as possible "
                "(within 48 hours).")
        plan = [
            "Contact your healthcare provider within 48 hours",
            "Monitor symptoms for any worsening",
            "Keep track of your symptoms",
            "Get adequate rest",
        ]
    elif best is not None and not result.is_fallback:
        text = (f"Based on your symptoms, we recommend consulting a "
                f"{best.specialization.replace('_', ' ')} specialist.")
        plan = [
            "Schedule an appointment with recommended specialist",
            "Prepare a list of your symptoms and duration",
            "Note down any medications you are currently taking",
            "Keep a symptom diary",
        ]
    else:
        text = "Based on your symptoms, we recommend consulting a general medicine practitioner."
        plan = [
            "Schedule a general consultation",
            "Maintain a healthy lifestyle",
            "Monitor your symptoms",
            "Follow up if symptoms persist",
        ]

    notes = ""
    if age is not None and age > 65:
        notes = "Consider discussing with a geriatric specialist due to age factor."

    return HealthRecommendation(
        recommendation=text,
        action_plan=plan,
        urgency_level=urgency,
        best_match=best,
        additional_notes=notes,
    )
