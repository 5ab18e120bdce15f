"""Authentication utilities and dependency injection."""

from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kbchat.config.logger import app_logger
from kbchat.utils.local_tokens import decode_local_token

ADMIN_ROLE = "admin"
USER_ROLE = "user"

# HTTP Bearer token security scheme
security_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Bearer token authentication",
    auto_error=False,  # We'll handle errors manually for better control
)


async def get_auth_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme),
) -> str:
    """Extract and validate Bearer token from Authorization header.

    Args:
        credentials: HTTP Bearer credentials from Security dependency

    Returns:
        str: The authentication token

    Raises:
        HTTPException: If token is missing or invalid
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials.strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token


async def verify_token(token: str = Depends(get_auth_token)) -> dict:
    """Verify and decode JWT authentication token.

    The role comes from the ``app_role`` claim (falling back to ``role``);
    anything other than ``admin`` is treated as a regular user.

    Returns:
        dict: ``user_id``, ``email``, ``role`` and the raw ``token``

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = decode_local_token(token)
    except ValueError as exc:
        app_logger.warning(f"Rejected bearer token: {exc}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("app_role") or payload.get("role")
    return {
        "user_id": str(user_id),
        "email": email,
        "role": ADMIN_ROLE if role == ADMIN_ROLE else USER_ROLE,
        "token": token,
    }


async def get_current_user(token_payload: dict = Depends(verify_token)) -> dict:
    """Authenticated caller as ``{user_id, email, role}``."""
    return {
        "user_id": token_payload["user_id"],
        "email": token_payload["email"],
        "role": token_payload["role"],
    }


async def require_auth(user: dict = Depends(get_current_user)) -> str:
    """Dependency that requires authentication and returns the user ID.

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = user.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Dependency that requires the admin role.

    Raises:
        HTTPException: 403 if the caller is not an admin
    """
    if user.get("role") != ADMIN_ROLE:
        app_logger.warning(f"User {user.get('user_id')} attempted an admin operation")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user
