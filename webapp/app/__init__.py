"""
Multitenant Azure AD web app.

Packages:
- auth: OIDC sign-in, session cookie and token cache
- pages: landing, home and error pages

Run with:
    uvicorn app.main:create_app --factory --reload --app-dir webapp --port 8080
"""

__version__ = "1.0.0"
