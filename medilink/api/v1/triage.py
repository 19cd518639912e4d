from fastapi import APIRouter, Depends, Query

from ...api.deps import get_current_principal, get_services, rate_limit_check
from ...core.security import Principal
from ...schemas.triage import (
    AnalyzeResponse, MatchResponse, SuggestionList, SymptomList, SymptomRequest
)
from ...services.container import ServiceContainer
from ...services.triage_service import health_recommendation, is_emergency

router = APIRouter(prefix="/triage", tags=["Triage"])


@router.post("/analyze", response_model=AnalyzeResponse)
def analyze_symptoms(
    request: SymptomRequest,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services),
    _: None = Depends(rate_limit_check)
):
    """Classify symptoms and list approved doctors per recommended specialization."""
    result = services.classifier.analyze(request.symptoms)
    return AnalyzeResponse(
        analysis=result,
        is_emergency=is_emergency(result),
        recommended_doctors=services.matcher.recommend(result),
        recommendation=health_recommendation(result, request.age),
    )


@router.post("/match", response_model=MatchResponse)
def match_doctor(
    request: SymptomRequest,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services)
):
    """Pick the single best doctor for a symptom report."""
    result = services.classifier.analyze(request.symptoms)
    selected = services.matcher.match(result)
    return MatchResponse(
        analysis=result,
        doctor=selected.doctor,
        specialization=selected.specialization,
        online=selected.online,
        reason=selected.reason,
    )


@router.get("/symptoms", response_model=SymptomList)
def list_symptoms(services: ServiceContainer = Depends(get_services)):
    return SymptomList(symptoms=services.classifier.all_symptoms())


@router.get("/suggestions", response_model=SuggestionList)
def symptom_suggestions(
    query: str = Query("", description="At least two characters"),
    services: ServiceContainer = Depends(get_services)
):
    return SuggestionList(suggestions=services.classifier.suggestions(query))


@router.get("/categories/{specialization}", response_model=SymptomList)
def symptoms_by_category(
    specialization: str,
    services: ServiceContainer = Depends(get_services)
):
    return SymptomList(symptoms=services.classifier.symptoms_by_category(specialization))
