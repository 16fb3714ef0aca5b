"""
Configuration module for the multitenant Azure AD web app.

This module uses Pydantic Settings to load and validate environment variables
for Azure AD (OpenID Connect) authentication, the server-side session store,
the per-user token cache and the landing page routes.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import List, Optional
from uuid import UUID

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.models import AzureAdOptions


GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The AZURE_AD_* block is bound once at startup into an immutable
    `AzureAdOptions` record (see `azure_ad_options`).
    """

    # =========================================================================
    # Azure AD (OIDC Authentication)
    # =========================================================================

    AZURE_AD_CLIENT_ID: str = Field(
        ...,
        description="Azure AD Application (Client) ID",
        min_length=36,
        max_length=36,
    )

    AZURE_AD_CLIENT_SECRET: str = Field(
        ...,
        description="Azure AD client secret used for authorization code redemption",
        min_length=1,
    )

    AZURE_AD_INSTANCE: str = Field(
        default="https://login.microsoftonline.com/common/v2.0",
        description="Authority URL; the discovery document lives under /.well-known/openid-configuration",
    )

    AZURE_AD_CALLBACK_PATH: str = Field(
        default="/signin-oidc",
        description="Path on this app that receives the provider's authorization response",
    )

    AZURE_AD_GRAPH_API_URI: str = Field(
        default="https://graph.microsoft.com",
        description="Resource the redeemed access token is requested for",
    )

    AZURE_AD_REQUIRE_HTTPS_METADATA: bool = Field(
        default=False,
        description="Reject a non-https authority when fetching discovery metadata",
    )

    AZURE_AD_VALIDATE_ISSUER: bool = Field(
        default=False,
        description="Enforce AZURE_AD_VALID_ISSUERS on ID tokens (off for multitenant apps)",
    )

    AZURE_AD_VALID_ISSUERS: Optional[str] = Field(
        None,
        description="Comma-separated issuer allow-list, used only when AZURE_AD_VALIDATE_ISSUER is true",
    )

    # =========================================================================
    # Session Cookie / Ticket Store
    # =========================================================================

    SESSION_SECRET_KEY: str = Field(
        ...,
        description="Secret for signing the session cookie and the OIDC correlation session",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="webapp.session",
        description="Name of the cookie carrying the session reference",
    )

    SESSION_COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark the session cookie Secure (disable only for local http)",
    )

    SESSION_TTL_SECONDS: int = Field(
        default=3600,
        description="Idle lifetime of a server-side authentication ticket",
        ge=60,
        le=86400,
    )

    SESSION_SLIDING_EXPIRATION: bool = Field(
        default=True,
        description="Push the ticket expiry forward on every successful read",
    )

    # =========================================================================
    # Token Cache / Metadata
    # =========================================================================

    TOKEN_CACHE_TTL_SECONDS: int = Field(
        default=86400,
        description="Lifetime of a per-user token cache entry",
        ge=60,
    )

    METADATA_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the discovery document and JWKS keys",
        ge=60,
        le=86400,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for requests to the identity provider",
        gt=0,
    )

    # =========================================================================
    # Routes
    # =========================================================================

    HOME_PATH: str = Field(default="/Index", description="Home route for authenticated users")
    ERROR_PATH: str = Field(default="/Error", description="Where failed sign-ins are sent")

    # =========================================================================
    # Onboarding (in-memory repositories)
    # =========================================================================

    ONBOARDED_TENANT_IDS: Optional[str] = Field(
        None,
        description="Comma-separated tenant GUIDs seeded into the in-memory tenant repository",
    )

    # =========================================================================
    # Server
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")
    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def azure_ad_options(self) -> AzureAdOptions:
        """Bind the AZURE_AD_* settings into an immutable options record."""
        return AzureAdOptions(
            client_id=self.AZURE_AD_CLIENT_ID,
            client_secret=self.AZURE_AD_CLIENT_SECRET,
            instance=self.AZURE_AD_INSTANCE,
            callback_path=self.AZURE_AD_CALLBACK_PATH,
            graph_api_uri=self.AZURE_AD_GRAPH_API_URI,
            require_https_metadata=self.AZURE_AD_REQUIRE_HTTPS_METADATA,
            validate_issuer=self.AZURE_AD_VALIDATE_ISSUER,
            valid_issuers=tuple(self.valid_issuers_list),
        )

    @property
    def valid_issuers_list(self) -> List[str]:
        if not self.AZURE_AD_VALID_ISSUERS:
            return []
        return [
            issuer.strip()
            for issuer in self.AZURE_AD_VALID_ISSUERS.split(",")
            if issuer.strip()
        ]

    @property
    def onboarded_tenant_ids(self) -> List[UUID]:
        """
        Parse ONBOARDED_TENANT_IDS into UUIDs.

        Returns:
            List of tenant ids, empty when not configured.
        """
        if not self.ONBOARDED_TENANT_IDS:
            return []
        return [
            UUID(value.strip())
            for value in self.ONBOARDED_TENANT_IDS.split(",")
            if value.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("AZURE_AD_CLIENT_ID")
    @classmethod
    def validate_guid_format(cls, v: str) -> str:
        """
        Validate that the client id is in GUID format.

        Raises:
            ValueError: If not a valid GUID format
        """
        if not GUID_PATTERN.match(v):
            raise ValueError(
                f"Invalid GUID format: {v}. "
                "Expected format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
            )
        return v.lower()

    @field_validator("AZURE_AD_CALLBACK_PATH", "HOME_PATH", "ERROR_PATH")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Path must start with '/': {v}")
        return v

    @field_validator("AZURE_AD_INSTANCE")
    @classmethod
    def validate_instance(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"AZURE_AD_INSTANCE must be an absolute URL, got: {v}")
        return v.rstrip("/")

    @field_validator("ONBOARDED_TENANT_IDS")
    @classmethod
    def validate_tenant_ids(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return v
        for value in v.split(","):
            value = value.strip()
            if value and not GUID_PATTERN.match(value):
                raise ValueError(f"Invalid tenant id in ONBOARDED_TENANT_IDS: '{value}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Validate security-relevant settings and return a status report.

    Called during application startup; warnings are logged, not raised.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    options = settings.azure_ad_options

    if options.require_https_metadata and not options.instance.startswith("https://"):
        errors.append("AZURE_AD_REQUIRE_HTTPS_METADATA is set but AZURE_AD_INSTANCE is not https")

    if not options.require_https_metadata:
        warnings.append("HTTPS is not required for OIDC metadata retrieval")

    if not options.validate_issuer:
        warnings.append("Issuer validation is disabled (multitenant mode)")
    elif not options.valid_issuers:
        errors.append("AZURE_AD_VALIDATE_ISSUER is set but AZURE_AD_VALID_ISSUERS is empty")

    if not settings.SESSION_COOKIE_SECURE:
        warnings.append("Session cookie is not marked Secure")
        warnings.append(
            "Correlation cookie falls back to SameSite=Lax; browsers drop it on the "
            "cross-site form_post callback, so sign-in needs https"
        )

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }
