"""Signed session tokens.

Signed-in users carry a bearer token whose subject is their user id. Anonymous browsers
carry a signed token in ``X-Session-Id`` whose subject is the session id their quota is
counted under, so a client cannot mint fresh anonymous identities on its own.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import secrets

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "wedai_session"
ANONYMOUS_TOKEN_TYPE = "wedai_anonymous"
ANONYMOUS_SESSION_PREFIX = "anon_"


def _issue(subject: str, token_type: str, ttl: timedelta, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    expires_at = now + ttl
    claims: Dict[str, Any] = {
        "sub": subject,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    claims.update(extra or {})
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "subject": subject,
        "expires_at": int(expires_at.timestamp()),
    }


def _verify(token: str, token_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != token_type:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return payload


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token for a signed-in user."""
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    issued = _issue(
        user_id,
        SESSION_TOKEN_TYPE,
        timedelta(hours=max(ttl_hours, 1)),
        {"email": email} if email else None,
    )
    return {"token": issued["token"], "expires_at": issued["expires_at"]}


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed-in user's session token."""
    return _verify(token, SESSION_TOKEN_TYPE)


def new_anonymous_session_id() -> str:
    return ANONYMOUS_SESSION_PREFIX + secrets.token_urlsafe(24)


def create_anonymous_session(session_id: Optional[str] = None) -> Dict[str, Any]:
    """Issue the signed ``X-Session-Id`` value for a new anonymous browser."""
    ttl_days = max(int(settings.ANONYMOUS_SESSION_TTL_DAYS or 30), 1)
    issued = _issue(session_id or new_anonymous_session_id(), ANONYMOUS_TOKEN_TYPE, timedelta(days=ttl_days))
    return {
        "session_id": issued["token"],
        "anonymous_id": issued["subject"],
        "expires_at": issued["expires_at"],
    }


def decode_anonymous_session(token: str) -> str:
    """Return the session id a signed ``X-Session-Id`` stands for. Raises ValueError."""
    payload = _verify(token, ANONYMOUS_TOKEN_TYPE)
    return str(payload["sub"]).strip()
