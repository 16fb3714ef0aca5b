"""
Authentication Package

This package handles multitenant Azure AD sign-in for the web app using
OpenID Connect (hybrid flow) and a server-side session store.

Modules:
- azure_ad: Azure AD options and the failure / code / validation hooks
- oidc: OIDC handler driving challenge and callback processing
- session: Session cookie issuance and the principal dependency
- ticket_store: Server-side authentication tickets keyed by session id
- token_cache: Per-user MSAL token cache and code redemption
- utils: Discovery metadata, JWKS and ID token verification
- routes: Callback, sign-in and sign-out endpoints
- errors: Authentication exception hierarchy

The authentication flow:
1. Browser is challenged and sent to Azure AD
2. Azure AD posts code + id_token to the callback path
3. The id_token is verified; the tenant/user must be onboarded
4. The code is redeemed and tokens are cached per user
5. A ticket is stored server-side and the session cookie is issued
"""

from .azure_ad import build_openid_connect_options
from .oidc import OpenIdConnectHandler
from .routes import build_auth_router

__all__ = [
    "build_auth_router",
    "build_openid_connect_options",
    "OpenIdConnectHandler",
]
