"""
Authentication exceptions.

Every exception raised while processing an authorization response is handed
to the `on_failure` hook of the OIDC handler. These classes let the hook and
the logs tell protocol problems apart from authorization denials.
"""


class AuthenticationError(Exception):
    """Base exception for failed remote authentication"""
    pass


class OidcProtocolError(AuthenticationError):
    """Malformed or unexpected authorization response (error param, state mismatch, ...)"""
    pass


class SecurityTokenValidationError(AuthenticationError):
    """ID token rejected, or the authenticated principal is not allowed in"""
    pass


class TokenAcquisitionError(AuthenticationError):
    """Authorization code redemption failed at the token endpoint"""

    def __init__(self, error: str, description: str = ""):
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)


class ConfigurationError(Exception):
    """The OIDC handler was configured with inconsistent options"""
    pass
