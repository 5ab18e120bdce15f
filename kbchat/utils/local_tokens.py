"""JWT token helpers for authentication.

Tokens are issued by the identity provider (or ``scripts/issue_token.py`` in
development); this service only validates them.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from kbchat.config.settings import settings

ALGORITHM = "HS256"


def create_local_token(
    user_id: str,
    email: str,
    role: str = "user",
    expires_in: Optional[int] = None,
) -> str:
    """Create a JWT access token.

    Args:
        user_id: User ID to encode in the token
        email: User email to encode in the token
        role: ``user`` or ``admin``
        expires_in: Lifetime in seconds (defaults to LOCAL_AUTH_TOKEN_EXP_SECONDS)

    Returns:
        str: Encoded JWT token
    """
    now = datetime.now(timezone.utc)
    exp = now + timedelta(seconds=expires_in or settings.LOCAL_AUTH_TOKEN_EXP_SECONDS)
    payload = {
        "sub": user_id,
        "email": email,
        "app_role": role,
        "exp": exp,
        "iat": now,
    }
    if settings.AUTH_JWT_AUDIENCE:
        payload["aud"] = settings.AUTH_JWT_AUDIENCE
    return jwt.encode(payload, settings.LOCAL_AUTH_SECRET, algorithm=ALGORITHM)


def decode_local_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Args:
        token: JWT token string

    Returns:
        dict: Decoded token payload

    Raises:
        ValueError: If token is invalid or expired
    """
    audience = settings.AUTH_JWT_AUDIENCE or None
    try:
        payload = jwt.decode(
            token,
            settings.LOCAL_AUTH_SECRET,
            algorithms=[ALGORITHM],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
        return payload
    except JWTError as exc:
        raise ValueError(f"Invalid token: {exc}") from exc
