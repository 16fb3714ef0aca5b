"""
Session Cookie Management Module
================================

Issues and reads the session cookie. The cookie carries a signed JWT whose
only payload is a reference (`sid`) to the authentication ticket held in the
server-side ticket store; claims never leave the server.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from fastapi import HTTPException, Request, Response, status

from app.auth.ticket_store import MemoryCacheTicketStore
from app.config import Settings
from app.models import AuthenticationTicket, ClaimsPrincipal

logger = logging.getLogger(__name__)

SESSION_JWT_ALGORITHM = "HS256"
SESSION_JWT_ISSUER = "webapp-session"
COOKIE_SCHEME = "Cookies"


# =============================================================================
# Cookie Token
# =============================================================================

def create_session_token(
    session_id: str,
    secret: str,
    expires_utc: Optional[datetime] = None,
) -> str:
    """
    Sign a session reference.

    Args:
        session_id: Ticket store key
        secret: Signing secret
        expires_utc: Absolute expiry; omitted when the store TTL governs

    Returns:
        Encoded JWT string
    """
    payload: Dict[str, Any] = {
        "sid": session_id,
        "iat": datetime.now(timezone.utc),
        "iss": SESSION_JWT_ISSUER,
    }
    if expires_utc is not None:
        payload["exp"] = expires_utc

    return jwt.encode(payload, secret, algorithm=SESSION_JWT_ALGORITHM)


def verify_session_token(token: str, secret: str) -> Optional[str]:
    """
    Verify a session cookie value.

    Returns:
        The session id, or None if the token is missing, tampered or expired
    """
    if not token:
        return None

    try:
        decoded = jwt.decode(
            token,
            secret,
            algorithms=[SESSION_JWT_ALGORITHM],
            issuer=SESSION_JWT_ISSUER,
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require": ["sid", "iat", "iss"],
            },
        )
    except ExpiredSignatureError:
        logger.info("Session cookie expired")
        return None
    except InvalidTokenError as e:
        logger.warning(f"Invalid session cookie: {e}")
        return None

    return decoded["sid"]


# =============================================================================
# Sign In / Sign Out
# =============================================================================

async def sign_in(
    response: Response,
    principal: ClaimsPrincipal,
    ticket_store: MemoryCacheTicketStore,
    settings: Settings,
    expires_utc: Optional[datetime] = None,
) -> str:
    """
    Store a ticket for the principal and attach the session cookie.

    Returns:
        The new session id
    """
    ticket = AuthenticationTicket(
        principal=ClaimsPrincipal(claims=principal.claims, authentication_type=COOKIE_SCHEME),
        scheme=COOKIE_SCHEME,
        expires_utc=expires_utc,
    )
    session_id = await ticket_store.store(ticket)

    token = create_session_token(session_id, settings.SESSION_SECRET_KEY, expires_utc)
    max_age = None
    if expires_utc is not None:
        max_age = max(int((expires_utc - datetime.now(timezone.utc)).total_seconds()), 0)

    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    return session_id


async def sign_out(
    request: Request,
    response: Response,
    ticket_store: MemoryCacheTicketStore,
    settings: Settings,
) -> Optional[AuthenticationTicket]:
    """
    Drop the caller's ticket and delete the cookie.

    Returns:
        The removed ticket, if there was one
    """
    session_id = verify_session_token(
        request.cookies.get(settings.SESSION_COOKIE_NAME, ""),
        settings.SESSION_SECRET_KEY,
    )
    ticket = None
    if session_id:
        ticket = await ticket_store.retrieve(session_id)
        await ticket_store.remove(session_id)

    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return ticket


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_optional_principal(request: Request) -> ClaimsPrincipal:
    """
    FastAPI dependency resolving the caller's principal from the session cookie.

    Returns an anonymous principal (`is_authenticated` False) when there is no
    cookie, the cookie is invalid, or the ticket is gone from the store.

    Usage:
        @router.get("/page")
        async def page(principal: ClaimsPrincipal = Depends(get_optional_principal)):
            if principal.is_authenticated:
                ...
    """
    settings: Settings = request.app.state.settings
    ticket_store: MemoryCacheTicketStore = request.app.state.ticket_store

    session_id = verify_session_token(
        request.cookies.get(settings.SESSION_COOKIE_NAME, ""),
        settings.SESSION_SECRET_KEY,
    )
    if not session_id:
        return ClaimsPrincipal()

    ticket = await ticket_store.retrieve(session_id)
    if ticket is None:
        logger.info("Session cookie references an unknown or expired ticket")
        return ClaimsPrincipal()

    return ticket.principal


async def get_current_principal(request: Request) -> ClaimsPrincipal:
    """
    FastAPI dependency requiring a signed-in caller.

    Usage in routes:
        @router.get("/api/me")
        async def me(principal: ClaimsPrincipal = Depends(get_current_principal)):
            return principal.claims

    Raises:
        HTTPException: 401 if there is no valid session
    """
    principal = await get_optional_principal(request)
    if not principal.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not signed in",
        )
    return principal
