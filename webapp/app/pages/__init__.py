"""
Pages Package
=============

Server-rendered pages: the landing gatekeeper, the home page and the error
page failed sign-ins are sent to.

Usage:
------
    from app.pages import pages_router
    app.include_router(pages_router)
"""

from .routes import pages_router

__all__ = ["pages_router"]
