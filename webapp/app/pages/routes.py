"""
Page routes.

- /Account/Welcome : landing page; authenticated callers are sent home
- /Index           : home page, requires a signed-in user
- /Error           : where failed sign-ins end up
"""

import html
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from app.auth.session import get_optional_principal
from app.auth.utils import get_user_display_name, get_user_principal_name
from app.models import ClaimsPrincipal

logger = logging.getLogger(__name__)

WELCOME_PATH = "/Account/Welcome"

pages_router = APIRouter(tags=["Pages"])


@pages_router.get("/", include_in_schema=False)
async def root():
    return RedirectResponse(url=WELCOME_PATH, status_code=302)


@pages_router.get(WELCOME_PATH, response_class=HTMLResponse)
async def welcome(request: Request, principal: ClaimsPrincipal = Depends(get_optional_principal)):
    """
    Landing page.

    Authenticated callers are redirected to the home route and the page
    body is never rendered.
    """
    if principal.is_authenticated:
        return RedirectResponse(url=request.app.state.settings.HOME_PATH, status_code=302)

    return _render_page(
        title="Welcome",
        body="""
            <h1>Welcome</h1>
            <p class="message">Sign in with your work or school account to continue.</p>
            <a href="/Account/SignIn" class="button">Sign in</a>
        """,
    )


@pages_router.get("/Index", response_class=HTMLResponse)
async def index(request: Request, principal: ClaimsPrincipal = Depends(get_optional_principal)):
    """Home page; anonymous callers are challenged."""
    if not principal.is_authenticated:
        return await request.app.state.oidc_handler.challenge(request, request.url.path)

    name = html.escape(get_user_display_name(principal))
    upn = html.escape(get_user_principal_name(principal) or "")

    return _render_page(
        title="Home",
        body=f"""
            <h1>Hello, {name}</h1>
            <p class="message">{upn}</p>
            <a href="/Account/SignOut" class="button">Sign out</a>
        """,
    )


@pages_router.get("/Error", response_class=HTMLResponse)
async def error_page():
    return _render_page(
        title="Error",
        body="""
            <h1>Sign-in failed</h1>
            <p class="message">An error occurred while processing your request.
            Your organization may not be registered for this application.</p>
            <a href="/Account/Welcome" class="button">Back</a>
        """,
    )


def _render_page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{title}</title>
        <style>
            * {{ margin: 0; padding: 0; box-sizing: border-box; }}
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #f3f4f6;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                padding: 20px;
            }}
            .container {{
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 500px;
                width: 100%;
                box-shadow: 0 10px 40px rgba(0,0,0,0.1);
                text-align: center;
            }}
            h1 {{
                color: #1f2937;
                font-size: 24px;
                margin-bottom: 16px;
            }}
            .message {{
                color: #6b7280;
                font-size: 16px;
                line-height: 1.6;
                margin-bottom: 32px;
            }}
            .button {{
                display: inline-block;
                background: #2563eb;
                color: white;
                padding: 14px 32px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            {body}
        </div>
    </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=status_code)
