"""Authentication dependencies for FastAPI route protection.

Usage in any route:
    @router.get("/projects")
    async def list_projects(current_user: User = Depends(get_current_user)):
        # current_user is guaranteed to be a valid, active user
        ...
"""

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.auth.jwt import decode_access_token
from apps.api.database import get_db
from apps.api.exceptions import UnauthorizedException
from apps.api.models.user import User
from apps.api.repositories import user_repo

# Tokens come from the auth service's login endpoint
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from the JWT token.

    1. oauth2_scheme extracts the token from "Authorization: Bearer <token>"
    2. decode_access_token verifies it and gets the user id
    3. The user must exist and be active

    If any step fails → 401 Unauthorized
    """
    user_id = decode_access_token(token)
    if user_id is None:
        raise UnauthorizedException("Invalid or expired token")

    user = await user_repo.get_by_id(db, user_id)
    if user is None:
        raise UnauthorizedException("User not found")

    if not user.is_active:
        raise UnauthorizedException("User account is deactivated")

    return user
