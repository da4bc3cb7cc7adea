"""
Auth core.

Bearer JWT verification (PyJWT) turning an access token into ``UserInfo``.
The token subject is the account id used throughout billing.
"""

import secrets
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from rankpilot.platform.settings import settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

ACCESS_TOKEN_EXPIRE_MINUTES = 30


class TokenType(str, Enum):
    """JWT token types."""

    ACCESS = "access"
    REFRESH = "refresh"


class UserInfo(BaseModel):
    """Authenticated caller.

    ``user_id`` is the account id owning the subscription record.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str
    email: str | None = None
    roles: list[str] = Field(default_factory=list)

    @property
    def account_id(self) -> str:
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def create_access_token(
    subject: str,
    additional_claims: dict[str, Any] | None = None,
    expire_minutes: int | None = None,
) -> str:
    """Create a signed access token."""
    now = datetime.now(UTC)
    claims: dict[str, Any] = {
        "sub": subject,
        "type": TokenType.ACCESS.value,
        "iat": now,
        "exp": now + timedelta(minutes=expire_minutes or ACCESS_TOKEN_EXPIRE_MINUTES),
        "jti": secrets.token_urlsafe(16),
    }
    if settings.jwt.issuer:
        claims["iss"] = settings.jwt.issuer
    if settings.jwt.audience:
        claims["aud"] = settings.jwt.audience
    if additional_claims:
        claims.update(additional_claims)
    return jwt.encode(claims, settings.jwt.secret_key, algorithm=settings.jwt.algorithm)


def verify_token(token: str, expected_type: TokenType = TokenType.ACCESS) -> dict[str, Any]:
    """
    Verify and decode a token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or of the wrong type
    """
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt.secret_key,
            algorithms=[settings.jwt.algorithm],
            issuer=settings.jwt.issuer,
            audience=settings.jwt.audience,
            options={"require": ["sub", "exp"], "verify_aud": settings.jwt.audience is not None},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.debug("auth.token.invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if claims.get("type", TokenType.ACCESS.value) != expected_type.value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token type. Expected {expected_type.value}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def _claims_to_user_info(claims: dict[str, Any]) -> UserInfo:
    """Convert JWT claims to UserInfo."""
    return UserInfo(
        user_id=str(claims["sub"]),
        email=claims.get("email"),
        roles=list(claims.get("roles", [])),
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> UserInfo:
    """Get the current authenticated user from the Bearer token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _claims_to_user_info(verify_token(credentials.credentials))


async def require_admin(
    current_user: Annotated[UserInfo, Depends(get_current_user)],
) -> UserInfo:
    """Require the admin role."""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return current_user
