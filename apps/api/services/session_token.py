"""Bearer session tokens for anonymous canvas participants."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "canvas_session"


def create_session_token(participant_id: str, expires_hours: Optional[int] = None) -> Dict[str, Any]:
    """Sign a token whose subject is the participant id."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": participant_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> str:
    """Validate a session token and return the participant id it names."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")
    return subject
