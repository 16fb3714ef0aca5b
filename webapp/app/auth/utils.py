"""
Authentication utilities for OIDC metadata discovery and ID token verification.

This module handles:
- Fetching and caching the provider discovery document and JWKS
- Verifying ID tokens from Azure AD (any tenant)
- Reading well-known claims in both short (v2) and URI (WS-Fed mapped) forms
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from jose.utils import calculate_at_hash

from app.auth.errors import ConfigurationError, SecurityTokenValidationError
from app.models import ClaimsPrincipal

logger = logging.getLogger(__name__)


# =============================================================================
# Claim Types
# =============================================================================

OBJECT_ID_CLAIM_TYPES = (
    "oid",
    "http://schemas.microsoft.com/identity/claims/objectidentifier",
)

TENANT_ID_CLAIM_TYPES = (
    "tid",
    "http://schemas.microsoft.com/identity/claims/tenantid",
)

# v1 tokens carry the UPN in unique_name; v2 tokens in preferred_username.
NAME_CLAIM_TYPES = (
    "unique_name",
    "upn",
    "preferred_username",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name",
)


# =============================================================================
# Metadata / JWKS Cache
# =============================================================================

class OidcMetadataClient:
    """
    Fetches the provider discovery document and signing keys with caching.

    Results are cached for `cache_seconds`. A JWKS miss on `kid` triggers
    one forced refresh, since Azure AD rotates keys.
    """

    def __init__(
        self,
        authority: str,
        cache_seconds: int = 3600,
        require_https: bool = False,
        timeout: float = 10.0,
    ):
        authority = authority.rstrip("/")
        if require_https and not authority.startswith("https://"):
            raise ConfigurationError(
                f"The authority must use HTTPS when require_https_metadata is set: {authority}"
            )
        self.authority = authority
        self.metadata_address = f"{authority}/.well-known/openid-configuration"
        self._cache_seconds = cache_seconds
        self._require_https = require_https
        self._timeout = timeout

        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_time: float = 0.0
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_time: float = 0.0

    async def get_metadata(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the discovery document.

        Raises:
            httpx.HTTPError: If the metadata endpoint is unreachable
            ValueError: If the document is missing required endpoints
        """
        now = time.time()
        if not force_refresh and self._metadata and (now - self._metadata_time) < self._cache_seconds:
            return self._metadata

        async with httpx.AsyncClient() as client:
            response = await client.get(self.metadata_address, timeout=self._timeout)
            response.raise_for_status()
            metadata = response.json()

        for field in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
            if field not in metadata:
                raise ValueError(f"Invalid discovery document: missing '{field}'")

        self._check_https(metadata["jwks_uri"])

        self._metadata = metadata
        self._metadata_time = now
        logger.info("Fetched OIDC discovery document", extra={"authority": self.authority})
        return metadata

    async def get_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the JWKS referenced by the discovery document.

        Raises:
            httpx.HTTPError: If JWKS endpoint is unreachable
            ValueError: If response is invalid
        """
        now = time.time()
        if not force_refresh and self._jwks and (now - self._jwks_time) < self._cache_seconds:
            return self._jwks

        metadata = await self.get_metadata()

        async with httpx.AsyncClient() as client:
            response = await client.get(metadata["jwks_uri"], timeout=self._timeout)
            response.raise_for_status()
            jwks_data = response.json()

        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks_data
        self._jwks_time = now
        return jwks_data

    def clear(self) -> None:
        self._metadata = None
        self._jwks = None

    def _check_https(self, url: str) -> None:
        if self._require_https and not url.startswith("https://"):
            raise ConfigurationError(f"Metadata endpoint is not HTTPS: {url}")


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from JWKS that matches the token's kid.

    Returns:
        Matching key from JWKS, or None if not found

    Raises:
        SecurityTokenValidationError: If token header is malformed
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise SecurityTokenValidationError(f"Failed to decode token header: {e}") from e

    kid = unverified_header.get("kid")
    if not kid:
        raise SecurityTokenValidationError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


async def verify_id_token(
    id_token: str,
    metadata_client: OidcMetadataClient,
    client_id: str,
    nonce: Optional[str] = None,
    validate_issuer: bool = False,
    valid_issuers: tuple = (),
    code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify and decode an ID token from Azure AD.

    Signature, audience and lifetime are always checked. The issuer is only
    checked against `valid_issuers` when `validate_issuer` is set; a
    multitenant app accepts tokens issued by any tenant and authorizes the
    tenant afterwards.

    When `code` is given (hybrid flow) the token must carry a matching
    `c_hash`, binding the code to this ID token.

    Returns:
        Dictionary of verified token claims

    Raises:
        SecurityTokenValidationError: If the token is invalid or expired
        httpx.HTTPError: If JWKS endpoint is unreachable
    """
    jwks = await metadata_client.get_jwks()

    signing_key = get_signing_key(id_token, jwks)
    if not signing_key:
        jwks = await metadata_client.get_jwks(force_refresh=True)
        signing_key = get_signing_key(id_token, jwks)

        if not signing_key:
            raise SecurityTokenValidationError(
                "Unable to find matching signing key in JWKS. "
                "Keys may have rotated or the token is forged."
            )

    try:
        public_key = jwk.construct(signing_key, algorithm="RS256")
    except Exception as e:
        raise SecurityTokenValidationError(f"Failed to construct public key from JWK: {e}") from e

    try:
        claims = jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=["RS256"],
            audience=client_id,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iss": False,
                "verify_sub": True,
                "verify_jti": False,
                "verify_at_hash": False,
                "leeway": 300,  # matches the provider's default clock skew
            },
        )
    except ExpiredSignatureError as e:
        raise SecurityTokenValidationError("ID token has expired") from e
    except JWTClaimsError as e:
        raise SecurityTokenValidationError(f"Invalid token claims: {e}") from e
    except JWTError as e:
        raise SecurityTokenValidationError(f"Token verification failed: {e}") from e

    if validate_issuer:
        issuer = claims.get("iss", "")
        if issuer not in valid_issuers:
            raise SecurityTokenValidationError(f"Issuer is not allowed: {issuer}")

    if nonce is not None and claims.get("nonce") != nonce:
        raise SecurityTokenValidationError("Nonce mismatch")

    if code is not None:
        verify_code_hash(claims, code)

    return claims


# =============================================================================
# Claim Helpers
# =============================================================================

def get_object_id(principal: ClaimsPrincipal) -> Optional[str]:
    """Object id of the user in its home tenant."""
    return principal.find_first(*OBJECT_ID_CLAIM_TYPES)


def get_user_principal_name(principal: ClaimsPrincipal) -> Optional[str]:
    return principal.find_first(*NAME_CLAIM_TYPES)


def get_tenant_id(principal: ClaimsPrincipal) -> UUID:
    """
    Read the tenant id claim as a UUID.

    Raises:
        SecurityTokenValidationError: If the claim is missing or not a GUID
    """
    value = principal.find_first(*TENANT_ID_CLAIM_TYPES)
    if not value:
        raise SecurityTokenValidationError("Token is missing the tenant id claim")
    try:
        return UUID(str(value))
    except ValueError as e:
        raise SecurityTokenValidationError(f"Malformed tenant id claim: {value}") from e


def get_user_display_name(principal: ClaimsPrincipal) -> str:
    """
    Display name, falling back to the local part of the UPN.
    """
    name = principal.find_first("name", "given_name")
    if name:
        return name

    upn = get_user_principal_name(principal)
    if upn and "@" in upn:
        return upn.split("@")[0].title()

    return "User"


def verify_code_hash(claims: Dict[str, Any], code: str) -> None:
    """
    Check the ID token's `c_hash` against the authorization code.

    c_hash is the base64url of the left half of SHA-256(code) for RS256.

    Raises:
        SecurityTokenValidationError: If c_hash is missing or does not match
    """
    c_hash = claims.get("c_hash")
    if not c_hash:
        raise SecurityTokenValidationError("ID token is missing the c_hash claim")

    expected = calculate_at_hash(code, hashlib.sha256)
    if not hmac.compare_digest(str(c_hash), expected):
        raise SecurityTokenValidationError("c_hash does not match the authorization code")
