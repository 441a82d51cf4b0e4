"""Authentication package.

Sign-up and login are handled by the external auth service; this package
only verifies the bearer tokens it issues:
    from apps.api.auth import get_current_user
"""

from apps.api.auth.jwt import create_access_token, decode_access_token
from apps.api.auth.dependencies import get_current_user, oauth2_scheme

__all__ = [
    "create_access_token",
    "decode_access_token",
    "get_current_user",
    "oauth2_scheme",
]
