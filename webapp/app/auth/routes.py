"""
Authentication routes for the OIDC sign-in flow.

Endpoints:
  - GET|POST {callback_path}   : authorization response from Azure AD
  - GET      /Account/SignIn   : start the sign-in flow
  - GET      /Account/SignOut  : drop the local session and sign out at Azure AD
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse

from app.auth.oidc import OpenIdConnectHandler
from app.auth.session import sign_out
from app.auth.token_cache import UserTokenCache
from app.auth.utils import get_object_id

logger = logging.getLogger(__name__)


def _handler(request: Request) -> OpenIdConnectHandler:
    handler = getattr(request.app.state, "oidc_handler", None)
    if not isinstance(handler, OpenIdConnectHandler):
        raise RuntimeError("OIDC handler not initialized. Build the app with create_app().")
    return handler


def build_auth_router(callback_path: str) -> APIRouter:
    """
    Create the authentication router.

    The callback path comes from configuration, so the router is built at
    application startup rather than at import time.
    """
    auth_router = APIRouter(tags=["Authentication"])

    @auth_router.api_route(callback_path, methods=["GET", "POST"], include_in_schema=False)
    async def signin_oidc(request: Request):
        """Receive the authorization code and id_token from Azure AD."""
        return await _handler(request).handle_callback(request)

    @auth_router.get("/Account/SignIn")
    async def account_sign_in(
        request: Request,
        returnUrl: Optional[str] = Query(None, description="Local path to return to after sign-in"),
    ):
        """Start the sign-in flow by redirecting to Azure AD."""
        return await _handler(request).challenge(request, returnUrl)

    @auth_router.get("/Account/SignOut")
    async def account_sign_out(request: Request):
        """
        Remove the local session, forget the user's cached tokens and
        redirect to the provider's end-session endpoint.
        """
        handler = _handler(request)
        settings = request.app.state.settings
        post_logout_redirect = f"{request.url.scheme}://{request.url.netloc}{settings.HOME_PATH}"

        end_session_endpoint = None
        try:
            metadata = await handler.metadata_client.get_metadata()
            end_session_endpoint = metadata.get("end_session_endpoint")
        except httpx.HTTPError as e:
            logger.warning(f"Could not fetch metadata for sign-out: {e}")

        if end_session_endpoint:
            url = f"{end_session_endpoint}?{urlencode({'post_logout_redirect_uri': post_logout_redirect})}"
        else:
            url = settings.HOME_PATH

        response = RedirectResponse(url=url, status_code=302)
        ticket = await sign_out(request, response, handler.ticket_store, settings)

        if ticket is not None:
            user_id = get_object_id(ticket.principal)
            if user_id:
                UserTokenCache(request.app.state.token_cache_store, user_id).clear()
            logger.info("User signed out", extra={"user_id": user_id})

        return response

    return auth_router
