"""
OpenID Connect handler.

Implements the hybrid (`code id_token`) authorization flow against Azure AD
as an explicit sequence of steps with named hooks:

    challenge ──► provider ──► callback
                                 │
                      state checked
                                 │
                      id_token validated ──► on_validated
                                 │
                      code received ───────► on_code_received
                                 │             (may redeem the code itself)
                      signed in (ticket stored, cookie set)

Any exception raised between the callback and sign-in is handed to
`on_failure`. If the hook handles it, its response is returned; otherwise
the exception propagates to the application's error handling.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fastapi import Request, Response
from fastapi.responses import RedirectResponse

from app.auth.errors import OidcProtocolError, SecurityTokenValidationError, TokenAcquisitionError
from app.auth.session import sign_in
from app.auth.ticket_store import MemoryCacheTicketStore
from app.auth.utils import OidcMetadataClient, verify_id_token
from app.config import Settings
from app.models import ClaimsPrincipal, utcnow

logger = logging.getLogger(__name__)

OIDC_SCHEME = "OpenIdConnect"

# Keys of the correlation values kept in the signed Starlette session
STATE_KEY = "oidc_state"
NONCE_KEY = "oidc_nonce"
RETURN_URL_KEY = "oidc_return_url"


# =============================================================================
# Hook Contexts
# =============================================================================

class BaseContext:
    def __init__(self, request: Request, options: "OpenIdConnectOptions"):
        self.request = request
        self.options = options


class TokenValidatedContext(BaseContext):
    """Passed to `on_validated` once the ID token is structurally valid."""

    def __init__(self, request, options, principal: ClaimsPrincipal, id_token_claims: Dict[str, Any]):
        super().__init__(request, options)
        self.principal = principal
        self.id_token_claims = id_token_claims


class CodeReceivedContext(BaseContext):
    """
    Passed to `on_code_received` with the authorization code.

    A hook that redeems the code itself calls `handle_code_redemption()` so
    the handler does not redeem it a second time.
    """

    def __init__(self, request, options, principal: ClaimsPrincipal, code: str, redirect_uri: str):
        super().__init__(request, options)
        self.principal = principal
        self.code = code
        self.redirect_uri = redirect_uri
        self.token_response: Optional[Dict[str, Any]] = None
        self.handled_code_redemption = False

    def handle_code_redemption(self, token_response: Optional[Dict[str, Any]] = None) -> None:
        self.handled_code_redemption = True
        self.token_response = token_response


class FailureContext(BaseContext):
    """
    Passed to `on_failure` with the exception that stopped authentication.
    """

    def __init__(self, request, options, exception: Exception):
        super().__init__(request, options)
        self.exception = exception
        self.response: Optional[Response] = None
        self.handled = False

    def redirect(self, url: str) -> None:
        self.response = RedirectResponse(url=url, status_code=302)

    def handle_response(self) -> None:
        """Mark the failure as dealt with; the exception is not re-raised."""
        self.handled = True


FailureHook = Callable[[FailureContext], Awaitable[None]]
CodeReceivedHook = Callable[[CodeReceivedContext], Awaitable[None]]
TokenValidatedHook = Callable[[TokenValidatedContext], Awaitable[None]]


@dataclass
class OidcEvents:
    on_failure: Optional[FailureHook] = None
    on_code_received: Optional[CodeReceivedHook] = None
    on_validated: Optional[TokenValidatedHook] = None


@dataclass
class OpenIdConnectOptions:
    client_id: str
    authority: str
    client_secret: Optional[str] = None
    callback_path: str = "/signin-oidc"
    response_type: str = "code id_token"
    response_mode: str = "form_post"
    scopes: Tuple[str, ...] = ("openid", "profile")
    use_token_lifetime: bool = True
    require_https_metadata: bool = True
    validate_issuer: bool = True
    valid_issuers: Tuple[str, ...] = ()
    events: OidcEvents = field(default_factory=OidcEvents)


# =============================================================================
# Handler
# =============================================================================

class OpenIdConnectHandler:
    """
    Drives the authorization flow for one set of options.

    The handler owns the metadata client; the ticket store and settings are
    shared with the cookie session layer.
    """

    def __init__(
        self,
        options: OpenIdConnectOptions,
        ticket_store: MemoryCacheTicketStore,
        settings: Settings,
        metadata_client: Optional[OidcMetadataClient] = None,
    ):
        self.options = options
        self.ticket_store = ticket_store
        self.settings = settings
        self.metadata_client = metadata_client or OidcMetadataClient(
            options.authority,
            cache_seconds=settings.METADATA_CACHE_SECONDS,
            require_https=options.require_https_metadata,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    def build_redirect_uri(self, request: Request) -> str:
        """Callback URL rebuilt from the inbound request's scheme and host."""
        return f"{request.url.scheme}://{request.url.netloc}{self.options.callback_path}"

    # -------------------------------------------------------------------------
    # Challenge
    # -------------------------------------------------------------------------

    async def challenge(self, request: Request, return_url: Optional[str] = None) -> RedirectResponse:
        """
        Redirect the browser to the provider's authorization endpoint.

        State and nonce are generated per attempt and kept in the signed
        session for the callback.
        """
        metadata = await self.metadata_client.get_metadata()

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)

        request.session[STATE_KEY] = state
        request.session[NONCE_KEY] = nonce
        request.session[RETURN_URL_KEY] = _safe_return_url(return_url, self.settings.HOME_PATH)

        params = {
            "client_id": self.options.client_id,
            "response_type": self.options.response_type,
            "response_mode": self.options.response_mode,
            "redirect_uri": self.build_redirect_uri(request),
            "scope": " ".join(self.options.scopes),
            "state": state,
            "nonce": nonce,
        }
        authorization_url = f"{metadata['authorization_endpoint']}?{urlencode(params)}"

        logger.info("Issuing OIDC challenge", extra={"path": request.url.path})
        return RedirectResponse(url=authorization_url, status_code=302)

    # -------------------------------------------------------------------------
    # Callback
    # -------------------------------------------------------------------------

    async def handle_callback(self, request: Request) -> Response:
        """
        Process the authorization response posted to the callback path.

        Returns:
            Redirect to the return URL on success, or the failure hook's
            response

        Raises:
            Exception: Whatever stopped authentication, if `on_failure`
                       did not handle it
        """
        params = await _read_authorization_response(request)
        expected_state = request.session.pop(STATE_KEY, None)
        nonce = request.session.pop(NONCE_KEY, None)
        return_url = request.session.pop(RETURN_URL_KEY, None) or self.settings.HOME_PATH

        try:
            principal, expires_utc = await self._authenticate(request, params, expected_state, nonce)
        except Exception as exc:
            return await self._fail(request, exc)

        response = RedirectResponse(url=return_url, status_code=302)
        await sign_in(response, principal, self.ticket_store, self.settings, expires_utc)

        logger.info(
            "User signed in",
            extra={"tenant_id": principal.claims.get("tid"), "user_id": principal.claims.get("oid")},
        )
        return response

    async def _authenticate(
        self,
        request: Request,
        params: Dict[str, str],
        expected_state: Optional[str],
        nonce: Optional[str],
    ) -> Tuple[ClaimsPrincipal, Optional[datetime]]:
        error = params.get("error")
        if error:
            raise OidcProtocolError(f"{error}: {params.get('error_description', '')}".rstrip(": "))

        state = params.get("state")
        if not expected_state or state != expected_state:
            raise OidcProtocolError("Invalid state parameter; the correlation session is missing or expired")

        code = params.get("code")
        id_token = params.get("id_token")
        if not id_token:
            raise OidcProtocolError("Authorization response is missing the id_token")
        if not code:
            raise OidcProtocolError("Authorization response is missing the code")

        claims = await verify_id_token(
            id_token,
            self.metadata_client,
            client_id=self.options.client_id,
            nonce=nonce,
            validate_issuer=self.options.validate_issuer,
            valid_issuers=self.options.valid_issuers,
            code=code,
        )

        expires_utc = None
        if self.options.use_token_lifetime and claims.get("exp"):
            expires_utc = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
            # Tokens inside the clock-skew leeway verify but would yield a dead session.
            if expires_utc <= utcnow():
                raise SecurityTokenValidationError("ID token has expired")

        principal = ClaimsPrincipal(claims=claims, authentication_type=OIDC_SCHEME)

        validated = TokenValidatedContext(request, self.options, principal, claims)
        if self.options.events.on_validated:
            await self.options.events.on_validated(validated)
        principal = validated.principal

        redirect_uri = self.build_redirect_uri(request)
        code_received = CodeReceivedContext(request, self.options, principal, code, redirect_uri)
        if self.options.events.on_code_received:
            await self.options.events.on_code_received(code_received)
        if not code_received.handled_code_redemption:
            code_received.token_response = await self._redeem_code(code, redirect_uri)

        return principal, expires_utc

    async def _fail(self, request: Request, exc: Exception) -> Response:
        logger.warning(
            f"Remote authentication failed: {exc}",
            extra={"exception_type": type(exc).__name__, "path": request.url.path},
            exc_info=True,
        )

        context = FailureContext(request, self.options, exc)
        if self.options.events.on_failure:
            await self.options.events.on_failure(context)

        if not context.handled:
            raise exc

        return context.response or Response(status_code=204)

    # -------------------------------------------------------------------------
    # Generic Code Redemption
    # -------------------------------------------------------------------------

    async def _redeem_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Exchange the authorization code at the metadata token endpoint.

        Only used when no `on_code_received` hook redeemed the code.

        Raises:
            TokenAcquisitionError: If token exchange fails
        """
        metadata = await self.metadata_client.get_metadata()

        payload = {
            "client_id": self.options.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.options.scopes),
        }
        if self.options.client_secret:
            payload["client_secret"] = self.options.client_secret

        async with httpx.AsyncClient() as client:
            response = await client.post(
                metadata["token_endpoint"],
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )

        if not response.is_success:
            error_data = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
            raise TokenAcquisitionError(
                error_data.get("error", "token_exchange_failed"),
                error_data.get("error_description", ""),
            )

        return response.json()


# =============================================================================
# Helpers
# =============================================================================

async def _read_authorization_response(request: Request) -> Dict[str, str]:
    """form_post responses arrive as a form body, query responses in the URL."""
    if request.method == "POST":
        form = await request.form()
        return {key: str(value) for key, value in form.items()}
    return dict(request.query_params)


def _safe_return_url(return_url: Optional[str], default: str) -> str:
    """Only local paths are accepted as post-login destinations."""
    if not return_url or not return_url.startswith("/") or return_url.startswith("//"):
        return default
    return return_url
