"""
Authentication and authorization for the storefront service.

Validates JWT bearer tokens issued by the Users service. Tokens carry the user
id in ``sub`` plus ``email`` and ``role``; ``role == "admin"`` unlocks the
back-office endpoints.
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str
    token: str


def create_access_token(user_id: int, email: str, role: str = "customer", secret_key: Optional[str] = None) -> str:
    """Issue a token in the Users service format (development and tests)."""
    claims = {"sub": str(user_id), "email": email, "role": role}
    return jwt.encode(claims, secret_key or config.SECRET_KEY, algorithm=config.ALGORITHM)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Raises:
        HTTPException: 401 if token is invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        token = credentials.credentials
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id_str = payload.get("sub")
        email = payload.get("email")
        role = payload.get("role")

        if user_id_str is None or email is None or role is None:
            raise credentials_exception

        return CurrentUser(id=int(user_id_str), email=email, role=role, token=token)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if current_user.role != config.ADMIN_ROLE:
        logger.warning(f"User {current_user.id} denied admin access")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
