"""
Data Models Module

This module defines Pydantic models shared across the web app.

Models are organized by functional area:
- Configuration models (Azure AD options)
- Directory models (tenants and users owned by the repositories)
- Session models (claims principal and authentication ticket)
- System models (health and error responses)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Configuration Models
# ============================================================================

class AzureAdOptions(BaseModel):
    """Azure AD client configuration, immutable once bound at startup."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., description="Application (client) id")
    client_secret: str = Field(..., description="Client secret for code redemption")
    instance: str = Field(..., description="Authority URL")
    callback_path: str = Field(default="/signin-oidc", description="Callback path on this app")
    graph_api_uri: str = Field(..., description="Resource requested during code redemption")
    require_https_metadata: bool = Field(default=False)
    validate_issuer: bool = Field(default=False)
    valid_issuers: Tuple[str, ...] = Field(default=())


# ============================================================================
# Directory Models
# ============================================================================

class Tenant(BaseModel):
    """An onboarded organization, keyed by its Azure AD tenant id."""

    model_config = ConfigDict(frozen=True)

    tenant_id: UUID = Field(..., description="Azure AD tenant id")
    name: Optional[str] = Field(None, description="Display name of the organization")
    onboarded_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """An individually onboarded user, keyed by (upn, tenant_id)."""

    model_config = ConfigDict(frozen=True)

    upn: str = Field(..., description="User principal name")
    tenant_id: UUID = Field(..., description="Home tenant of the user")
    display_name: Optional[str] = Field(None)


# ============================================================================
# Session Models
# ============================================================================

class ClaimsPrincipal(BaseModel):
    """The identity of the caller, as a flat claim dictionary."""

    claims: Dict[str, Any] = Field(default_factory=dict)
    authentication_type: Optional[str] = Field(None, description="Scheme that authenticated the caller")

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authentication_type)

    def find_first(self, *claim_types: str) -> Optional[Any]:
        """Return the value of the first claim type present, or None."""
        for claim_type in claim_types:
            value = self.claims.get(claim_type)
            if value not in (None, ""):
                return value
        return None


class AuthenticationTicket(BaseModel):
    """Server-side session state referenced by the session cookie."""

    principal: ClaimsPrincipal
    scheme: str = Field(default="Cookies")
    issued_utc: datetime = Field(default_factory=utcnow)
    expires_utc: Optional[datetime] = Field(None, description="Absolute expiry; None means store TTL only")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_utc is None:
            return False
        return (now or utcnow()) >= self.expires_utc


# ============================================================================
# System Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Exception detail (DEBUG only)")
