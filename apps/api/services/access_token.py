"""Verification of access tokens minted by the hosted auth provider.

The provider signs HS256 JWTs with the project secret. `sub` is the user id,
`aud` is the authenticated audience and `role` distinguishes signed-in users
from the anonymous key, which must never reach a paid endpoint.
"""

from typing import Any, Dict

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


AUTHENTICATED_ROLE = "authenticated"


class AccessTokenError(ValueError):
    pass


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except ExpiredSignatureError as exc:
        raise AccessTokenError("Access token expired.") from exc
    except JWTError as exc:
        raise AccessTokenError("Invalid access token.") from exc

    role = str(claims.get("role") or AUTHENTICATED_ROLE)
    if role != AUTHENTICATED_ROLE:
        raise AccessTokenError(f"Role {role!r} cannot call this endpoint.")
    if not str(claims.get("sub") or "").strip():
        raise AccessTokenError("Access token missing subject.")
    return claims
