"""Caller identity for user-scoped endpoints."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.access_token import AccessTokenError, decode_access_token


bearer = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> AuthContext:
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Sign in required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = decode_access_token(credentials.credentials)
    except AccessTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}) from exc

    email = (claims.get("email") or "").strip().lower()
    return AuthContext(user_id=str(claims["sub"]).strip(), email=email or None)
