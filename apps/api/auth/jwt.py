"""JWT token creation and verification.

Tokens are issued by the auth service and signed with the shared
JWT_SECRET_KEY. Every request to a project route carries one:
    Authorization: Bearer eyJ...

The payload's "sub" claim is the user id, which is all the build pipeline
needs to scope projects and storage locators.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID

from jose import JWTError, jwt

from apps.api.config import settings


def create_access_token(user_id: UUID, expire_minutes: int | None = None) -> str:
    """Sign a token for a user id.

    Used by operator scripts and tests; end users get theirs from the auth
    service. The payload looks like:
        {"sub": "550e8400-...", "exp": 1700000000, "iat": 1699996400}
    """
    now = datetime.now(timezone.utc)
    minutes = expire_minutes if expire_minutes is not None else settings.jwt_expire_minutes
    payload = {
        "sub": str(user_id),
        "exp": now + timedelta(minutes=minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID | None:
    """Return the user id in a valid token, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id_str: str | None = payload.get("sub")
        if user_id_str is None:
            return None
        return UUID(user_id_str)
    except (JWTError, ValueError):
        # Invalid signature, expired, or "sub" is not a UUID
        return None
