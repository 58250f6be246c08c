"""Bearer session tokens scoping API calls to a user.

Tokens are HS256 JWTs carrying the user id, optional email and the user's
promotional ``offers`` flag. Logging out revokes the token's ``jti`` for the
rest of its lifetime in this process.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "tps_session"

# jti -> exp (unix seconds)
_revoked_tokens: Dict[str, int] = {}


def _prune_revoked(now: Optional[float] = None) -> None:
    current = now if now is not None else time.time()
    for jti in [jti for jti, exp in _revoked_tokens.items() if exp <= current]:
        _revoked_tokens.pop(jti, None)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    offers: bool = False,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "offers": bool(offers),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "token_id": claims["jti"],
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode a session token. Raises ValueError when it is invalid, expired or revoked."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")

    jti = payload.get("jti")
    if jti and jti in _revoked_tokens:
        raise ValueError("Session token has been revoked.")

    return payload


def revoke_session_token(payload: Dict[str, Any]) -> bool:
    """Revoke a decoded token until its expiry. Returns False for tokens without a jti."""
    jti = payload.get("jti")
    if not jti:
        return False
    _prune_revoked()
    _revoked_tokens[str(jti)] = int(payload.get("exp") or time.time())
    return True
