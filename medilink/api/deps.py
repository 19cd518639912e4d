from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from starlette.requests import HTTPConnection
from typing import List

from ..core.config import settings
from ..core.database import get_redis
from ..core.exceptions import AuthorizationError
from ..core.security import security, principal_from_token, AuthenticationError, Principal, UserRole
from ..services.container import ServiceContainer


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Principal:
    """Extract and verify the JWT from the Authorization header."""
    principal = principal_from_token(credentials.credentials)
    if principal is None:
        raise AuthenticationError("Invalid or expired token")
    return principal


# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific user roles."""
    async def role_checker(
        principal: Principal = Depends(get_current_principal)
    ) -> Principal:
        if principal.kind not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return principal

    return role_checker


get_patient = require_role([UserRole.PATIENT])
get_admin = require_role([UserRole.ADMIN])


# Rate limiting dependency
async def rate_limit_check(
    request: Request,
    redis_client = Depends(get_redis)
) -> None:
    """Fixed one-hour window per client address."""
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:{request.url.path}:{client_ip}"

    current_requests = redis_client.get(key)
    if current_requests is None:
        redis_client.setex(key, 3600, 1)
    else:
        if int(current_requests) >= settings.RATE_LIMIT_PER_HOUR:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later."
            )
        redis_client.incr(key)


# Service dependencies
def get_services(connection: HTTPConnection) -> ServiceContainer:
    return connection.app.state.services
