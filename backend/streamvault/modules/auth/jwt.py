"""JWT validation for requests carrying tokens issued by the account service."""

from datetime import datetime
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from streamvault.core.config import settings

security = HTTPBearer(auto_error=False)

ACCESS_TOKEN_COOKIE = "access_token"


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # User ID
    exp: datetime
    type: str = "access"


def decode_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a JWT token.

    Returns:
        TokenPayload | None: Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return TokenPayload.model_validate(payload)
    except (JWTError, ValidationError):
        return None


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    access_token: Optional[str] = Cookie(default=None),
) -> str:
    """FastAPI dependency returning the authenticated user's ID.

    The token is read from the ``Authorization: Bearer`` header or, for
    players that cannot set headers, the ``access_token`` cookie.

    Raises:
        HTTPException: 401 if no valid access token is present
    """
    token = credentials.credentials if credentials else access_token
    payload = decode_token(token) if token else None
    if payload is None or payload.type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload.sub
