"""
Authentication: bearer JWT to ``UserInfo``.
"""

from rankpilot.platform.auth.core import (
    TokenType,
    UserInfo,
    create_access_token,
    get_current_user,
    require_admin,
    verify_token,
)

__all__ = [
    "TokenType",
    "UserInfo",
    "create_access_token",
    "get_current_user",
    "require_admin",
    "verify_token",
]
