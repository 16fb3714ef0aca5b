"""
Azure AD multitenant sign-in configuration.

Builds the `OpenIdConnectOptions` used by the OIDC handler from the bound
`AzureAdOptions` and attaches the three hooks:

- on_failure: send the browser to the error page.
- on_code_received: redeem the code for a Graph token and cache it per user.
- on_validated: only onboarded tenants (or individually onboarded users)
  get a session.

Tokens from any tenant are accepted at the protocol level; the tenant/user
check in `on_validated` replaces single-issuer validation.
"""

import asyncio
import logging
from typing import Optional

from app.auth.errors import SecurityTokenValidationError
from app.auth.oidc import (
    CodeReceivedContext,
    FailureContext,
    OidcEvents,
    OpenIdConnectOptions,
    TokenValidatedContext,
)
from app.auth.token_cache import MsalTokenAcquirer, UserTokenCache, resource_to_scope
from app.auth.utils import get_object_id, get_tenant_id, get_user_principal_name
from app.models import AzureAdOptions
from app.repositories import TenantRepository, UserRepository
from app.stores import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_ERROR_PATH = "/Error"


def build_openid_connect_options(
    options: AzureAdOptions,
    tenant_repository: TenantRepository,
    user_repository: UserRepository,
    token_cache_store: KeyValueStore,
    token_acquirer: Optional[MsalTokenAcquirer] = None,
    error_path: str = DEFAULT_ERROR_PATH,
    token_cache_ttl_seconds: Optional[float] = None,
) -> OpenIdConnectOptions:
    """
    Produce handler options for multitenant Azure AD sign-in.

    Args:
        options: Bound Azure AD configuration
        tenant_repository: Lookup of onboarded tenants
        user_repository: Lookup of individually onboarded users
        token_cache_store: Backing store of the per-user token caches
        token_acquirer: Code redemption client (MSAL by default)
        error_path: Where failed sign-ins are redirected
        token_cache_ttl_seconds: Lifetime of a user's token cache entry

    Returns:
        OpenIdConnectOptions with events attached
    """
    token_acquirer = token_acquirer or MsalTokenAcquirer(options.client_id, options.client_secret)
    graph_scopes = [resource_to_scope(options.graph_api_uri)]

    async def on_failure(context: FailureContext) -> None:
        logger.error(
            "Sign-in failed, redirecting to error page",
            extra={"exception_type": type(context.exception).__name__},
        )
        context.redirect(error_path)
        context.handle_response()

    async def on_code_received(context: CodeReceivedContext) -> None:
        user_id = get_object_id(context.principal)
        if not user_id:
            raise SecurityTokenValidationError("Token is missing the object identifier claim")

        token_cache = UserTokenCache(token_cache_store, user_id, token_cache_ttl_seconds)
        result = await token_acquirer.acquire_token_by_authorization_code_async(
            context.code,
            context.redirect_uri,
            graph_scopes,
            token_cache,
        )

        # The generic handler must not redeem the same code again.
        context.handle_code_redemption(result)

    async def on_validated(context: TokenValidatedContext) -> None:
        upn = get_user_principal_name(context.principal)
        if not upn:
            raise SecurityTokenValidationError("Token is missing the user principal name claim")
        tenant_id = get_tenant_id(context.principal)

        tenant, user = await asyncio.gather(
            tenant_repository.get_by_tenant_id(tenant_id),
            user_repository.get_by_upn_and_tenant_id(upn, tenant_id),
        )

        if tenant is None and user is None:
            logger.warning("Sign-in denied: tenant not onboarded", extra={"tenant_id": str(tenant_id)})
            raise SecurityTokenValidationError(f"Tenant {tenant_id} is not onboarded")

    return OpenIdConnectOptions(
        client_id=options.client_id,
        client_secret=options.client_secret,
        authority=options.instance,
        callback_path=options.callback_path,
        response_type="code id_token",
        use_token_lifetime=True,
        require_https_metadata=options.require_https_metadata,
        validate_issuer=options.validate_issuer,
        valid_issuers=options.valid_issuers,
        events=OidcEvents(
            on_failure=on_failure,
            on_code_received=on_code_received,
            on_validated=on_validated,
        ),
    )
