"""
Server-side authentication ticket store.

The session cookie only carries a reference to a ticket; the claims live
here, keyed by a random session id.
"""

import logging
import secrets
from typing import Optional

from app.models import AuthenticationTicket, utcnow
from app.stores import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "ticket:"


class MemoryCacheTicketStore:
    """
    Ticket store over a `KeyValueStore`.

    Eviction is the backing store's TTL (sliding or not). A ticket that
    carries its own `expires_utc` is also bounded by that absolute expiry.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    async def store(self, ticket: AuthenticationTicket) -> str:
        """Save a new ticket and return its session id."""
        session_id = secrets.token_urlsafe(32)
        await self.renew(session_id, ticket)
        logger.debug("Stored authentication ticket")
        return session_id

    async def renew(self, session_id: str, ticket: AuthenticationTicket) -> None:
        """Create or replace the ticket under an existing session id."""
        if ticket.is_expired(utcnow()):
            await self.remove(session_id)
            return
        self._store.set(KEY_PREFIX + session_id, ticket)

    async def retrieve(self, session_id: str) -> Optional[AuthenticationTicket]:
        """
        Return the ticket for a session id, or None for an unknown or
        expired id.
        """
        if not session_id:
            return None

        ticket = self._store.get(KEY_PREFIX + session_id)
        if ticket is None:
            return None

        if ticket.is_expired():
            await self.remove(session_id)
            return None

        return ticket

    async def remove(self, session_id: str) -> None:
        self._store.remove(KEY_PREFIX + session_id)
