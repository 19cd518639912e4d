"""Typed errors raised by the triage and scheduling core.

Services raise these instead of ``HTTPException`` so they can be used
outside a request; ``main.py`` maps them onto HTTP responses.
"""
from fastapi import status


class MedilinkError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "An unexpected error occurred"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(MedilinkError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"


class NoSymptomsError(ValidationError):
    default_detail = "No symptoms provided"


class NotFoundError(MedilinkError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class AuthorizationError(MedilinkError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not enough permissions"


class ConflictError(MedilinkError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Time slot already booked"


class StateError(MedilinkError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Operation not allowed in the current state"


class InvalidTransitionError(StateError):
    default_detail = "Invalid status transition"


class NoAvailableDoctorError(MedilinkError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "No available doctors found for your symptoms"


class UpstreamUnavailableError(MedilinkError):
    """Directory or store call failed or timed out; safe to retry with backoff."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Upstream service unavailable, please retry"
