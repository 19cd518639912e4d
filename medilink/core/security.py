from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from jose import JWTError, jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from pydantic import BaseModel
from enum import Enum

from .config import settings

# JWT Security
security = HTTPBearer()


class UserRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


class TokenPayload(BaseModel):
    sub: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[int] = None
    token_type: Optional[str] = None  # only "access" is accepted here


class Principal(BaseModel):
    """Authenticated caller: who they are and which kind of user."""
    id: int
    kind: UserRole

    model_config = {"frozen": True}

    @property
    def is_admin(self) -> bool:
        return self.kind == UserRole.ADMIN


# JWT utilities
def create_access_token(
    user_id: Union[int, str],
    role: UserRole,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "exp": datetime.now(timezone.utc) + expires_delta,
        "token_type": "access",
    }

    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )


def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify and decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )

        return TokenPayload(**payload)

    except JWTError:
        return None


def principal_from_token(token: Optional[str]) -> Optional[Principal]:
    """Decode an access token into a principal, or None when unusable."""
    if not token:
        return None

    payload = verify_token(token)
    if not payload or payload.token_type != "access" or not payload.sub:
        return None

    try:
        return Principal(id=int(payload.sub), kind=UserRole(payload.role))
    except ValueError:
        return None


# Security exceptions
class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )
