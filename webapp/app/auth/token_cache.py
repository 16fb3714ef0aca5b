"""
Per-user token cache and authorization code redemption.

Tokens acquired while redeeming the authorization code are kept in an MSAL
`SerializableTokenCache` whose serialized state lives in a `KeyValueStore`
under the user's object id. Each user only ever sees their own entry.
"""

import logging
from typing import Any, Dict, List, Optional

import msal
from starlette.concurrency import run_in_threadpool

from app.auth.errors import TokenAcquisitionError
from app.stores import KeyValueStore

logger = logging.getLogger(__name__)

# Code redemption always goes to the multitenant endpoint; the user's home
# tenant is whatever tenant issued the code.
COMMON_AUTHORITY = "https://login.microsoftonline.com/common/"

CACHE_KEY_PREFIX = "token_cache:"


def resource_to_scope(resource: str) -> str:
    """
    Turn a resource URI (e.g. https://graph.microsoft.com) into a v2 scope.
    """
    resource = resource.rstrip("/")
    if resource.endswith("/.default"):
        return resource
    return f"{resource}/.default"


class UserTokenCache:
    """
    MSAL token cache bound to one user object id.

    Usage:
        cache = UserTokenCache(store, oid)
        msal_cache = cache.load()
        ... acquire tokens with msal_cache ...
        cache.save(msal_cache)
    """

    def __init__(self, store: KeyValueStore, user_object_id: str, ttl_seconds: Optional[float] = None):
        if not user_object_id:
            raise ValueError("A user object id is required to key the token cache")
        self._store = store
        self._ttl_seconds = ttl_seconds
        self.user_object_id = user_object_id

    @property
    def key(self) -> str:
        return f"{CACHE_KEY_PREFIX}{self.user_object_id}"

    def load(self) -> msal.SerializableTokenCache:
        cache = msal.SerializableTokenCache()
        state = self._store.get(self.key)
        if state:
            cache.deserialize(state)
        return cache

    def save(self, cache: msal.SerializableTokenCache) -> None:
        if cache.has_state_changed:
            self._store.set(self.key, cache.serialize(), self._ttl_seconds)
            logger.debug("Token cache updated", extra={"user_id": self.user_object_id})

    def has_entry(self) -> bool:
        return self._store.get(self.key) is not None

    def clear(self) -> None:
        self._store.remove(self.key)


class MsalTokenAcquirer:
    """
    Redeems authorization codes with client credentials through MSAL.
    """

    def __init__(self, client_id: str, client_secret: str, authority: str = COMMON_AUTHORITY):
        self.client_id = client_id
        self._client_secret = client_secret
        self.authority = authority

    def _build_msal_app(self, cache: msal.SerializableTokenCache) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            client_id=self.client_id,
            client_credential=self._client_secret,
            authority=self.authority,
            token_cache=cache,
        )

    def acquire_token_by_authorization_code(
        self,
        code: str,
        redirect_uri: str,
        scopes: List[str],
        token_cache: UserTokenCache,
    ) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens and persist them.

        Raises:
            TokenAcquisitionError: If the token endpoint returns an error
        """
        cache = token_cache.load()
        msal_app = self._build_msal_app(cache)

        result = msal_app.acquire_token_by_authorization_code(
            code,
            scopes=scopes,
            redirect_uri=redirect_uri,
        )

        if not isinstance(result, dict) or "error" in result:
            result = result if isinstance(result, dict) else {}
            raise TokenAcquisitionError(
                result.get("error", "unknown_error"),
                result.get("error_description", ""),
            )

        token_cache.save(cache)
        return result

    async def acquire_token_by_authorization_code_async(
        self,
        code: str,
        redirect_uri: str,
        scopes: List[str],
        token_cache: UserTokenCache,
    ) -> Dict[str, Any]:
        """MSAL is blocking; run the redemption in the threadpool."""
        return await run_in_threadpool(
            self.acquire_token_by_authorization_code,
            code,
            redirect_uri,
            scopes,
            token_cache,
        )
