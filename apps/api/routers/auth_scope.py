"""Authentication dependencies resolving the calling participant."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    participant_id: str


def participant_from_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    """Best-effort participant id from a bearer token, without raising."""
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    try:
        return decode_session_token(credentials.credentials)
    except ValueError:
        return None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the participant from the Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        participant_id = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(participant_id=participant_id)
