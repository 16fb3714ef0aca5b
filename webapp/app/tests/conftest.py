"""
Shared fixtures: settings, a signing key pair standing in for Azure AD,
and an app wired to fakes for metadata discovery and code redemption.
"""

import base64
import hashlib
import time
import uuid
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from app.auth.token_cache import MsalTokenAcquirer
from app.auth.utils import OidcMetadataClient
from app.config import Settings
from app.main import create_app
from app.models import Tenant, User
from app.repositories import InMemoryTenantRepository, InMemoryUserRepository


CLIENT_ID = "6b9d2f4e-1c3a-4e5f-8a7b-9c0d1e2f3a4b"
TENANT_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
USER_OID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
UPN = "alice@example.com"
TEST_KID = "test-key-id-2024"
AUTH_CODE = "authorization-code"

METADATA = {
    "issuer": "https://login.microsoftonline.com/{tenantid}/v2.0",
    "authorization_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    "token_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
    "jwks_uri": "https://login.microsoftonline.com/common/discovery/v2.0/keys",
    "end_session_endpoint": "https://login.microsoftonline.com/common/oauth2/v2.0/logout",
}


def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    return private_pem.decode(), private_key.public_key()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()


def create_mock_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    return {"keys": [jwk]}


def create_id_token(
    nonce: Optional[str] = None,
    tenant_id: Any = TENANT_ID,
    upn: Optional[str] = UPN,
    oid: Optional[str] = USER_OID,
    audience: str = CLIENT_ID,
    exp_delta_seconds: int = 3600,
    kid: str = TEST_KID,
    code: Optional[str] = AUTH_CODE,
    **extra_claims,
) -> str:
    """
    Create an ID token shaped like a v1 Azure AD token, signed with the test key.
    """
    now = int(time.time())
    payload = {
        "iss": f"https://sts.windows.net/{tenant_id}/",
        "sub": "test-user-sub-123",
        "aud": audience,
        "iat": now - 60,
        "nbf": now - 60,
        "exp": now + exp_delta_seconds,
        "name": "Alice Example",
    }
    if tenant_id is not None:
        payload["tid"] = str(tenant_id)
    if upn is not None:
        payload["unique_name"] = upn
    if oid is not None:
        payload["oid"] = oid
    if code is not None:
        payload["c_hash"] = code_hash(code)
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update(extra_claims)

    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def code_hash(code: str) -> str:
    """c_hash for an RS256 token: base64url of the left half of SHA-256(code)."""
    digest = hashlib.sha256(code.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[:16]).rstrip(b"=").decode("ascii")


class StaticMetadataClient(OidcMetadataClient):
    """Serves fixed discovery metadata and JWKS without network access."""

    def __init__(self, jwks: Optional[Dict[str, Any]] = None):
        super().__init__("https://login.microsoftonline.com/common/v2.0")
        self.jwks = jwks or create_mock_jwks()
        self.jwks_requests = 0

    async def get_metadata(self, force_refresh: bool = False) -> Dict[str, Any]:
        return METADATA

    async def get_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        self.jwks_requests += 1
        return self.jwks


def build_settings(**overrides) -> Settings:
    values = dict(
        AZURE_AD_CLIENT_ID=CLIENT_ID,
        AZURE_AD_CLIENT_SECRET="test-client-secret",
        SESSION_SECRET_KEY="test-session-secret-1234567890123456",
        SESSION_COOKIE_SECURE=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def metadata_client():
    return StaticMetadataClient()


@pytest.fixture
def token_acquirer():
    """Code redemption double; records the cache it was given."""
    acquirer = Mock(spec=MsalTokenAcquirer)
    acquirer.acquire_token_by_authorization_code_async = AsyncMock(
        return_value={"access_token": "graph-access-token", "token_type": "Bearer"}
    )
    return acquirer


@pytest.fixture
def tenant_repository():
    return InMemoryTenantRepository()


@pytest.fixture
def user_repository():
    return InMemoryUserRepository()


@pytest.fixture
def onboarded_tenant():
    return Tenant(tenant_id=TENANT_ID, name="Example Corp")


@pytest.fixture
def onboarded_user():
    return User(upn=UPN, tenant_id=TENANT_ID, display_name="Alice Example")


@pytest.fixture
def app(settings, tenant_repository, user_repository, token_acquirer, metadata_client):
    return create_app(
        settings=settings,
        tenant_repository=tenant_repository,
        user_repository=user_repository,
        token_acquirer=token_acquirer,
        metadata_client=metadata_client,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def start_sign_in(client: TestClient, return_url: Optional[str] = None) -> Dict[str, str]:
    """
    Run the challenge and return the authorize request parameters
    (state, nonce, redirect_uri, ...).
    """
    params = {"returnUrl": return_url} if return_url else None
    response = client.get("/Account/SignIn", params=params, follow_redirects=False)
    assert response.status_code == 302

    query = parse_qs(urlparse(response.headers["location"]).query)
    return {key: values[0] for key, values in query.items()}


def post_callback(client: TestClient, **form):
    return client.post("/signin-oidc", data=form, follow_redirects=False)


def complete_sign_in(client: TestClient, **token_claims):
    """Challenge, then post a valid hybrid response for the issued nonce."""
    authorize = start_sign_in(client)
    id_token = create_id_token(nonce=authorize["nonce"], **token_claims)
    return post_callback(
        client,
        code=AUTH_CODE,
        id_token=id_token,
        state=authorize["state"],
    )
