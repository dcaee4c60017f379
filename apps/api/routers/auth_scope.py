"""Request identity dependencies: bearer session, anonymous session header and client IP."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import ValidationError
from services.rate_limits import RequestIdentity
from services.session_token import decode_anonymous_session, decode_session_token


auth_scheme = HTTPBearer(auto_error=False)

SESSION_HEADER = "x-session-id"
# Checked in order; the first non-empty value wins.
CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")
FALLBACK_CLIENT_IP = "127.0.0.1"


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _decode(credentials: HTTPAuthorizationCredentials) -> AuthContext:
    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _decode(credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like get_auth_context, but anonymous callers get None. A bad token is still a 401."""
    if not credentials:
        return None
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unsupported authorization scheme.")
    return _decode(credentials)


def client_ip(request: Request) -> str:
    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return FALLBACK_CLIENT_IP


async def get_request_identity(
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
) -> RequestIdentity:
    """Build the caller's identity from server-side signals only.

    ``X-Session-Id`` must be a token issued by ``POST /generation/session``.
    """
    raw_session = (request.headers.get(SESSION_HEADER) or "").strip()
    session_id = None
    if raw_session:
        try:
            session_id = decode_anonymous_session(raw_session)
        except ValueError as exc:
            raise ValidationError("X-Session-Id is not a session issued by this service.") from exc
    identity = RequestIdentity(
        ip_address=client_ip(request),
        user_id=auth.user_id if auth else None,
        session_id=session_id,
        user_agent=request.headers.get("user-agent"),
    )
    identity.validate()
    return identity
