"""
Tenant and user repositories.

The persistence layer behind onboarded tenants and users lives outside this
service; these protocols are the only surface the authentication flow
consumes. The in-memory implementations back local development and tests.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Protocol, Tuple
from uuid import UUID

from app.models import Tenant, User

logger = logging.getLogger(__name__)


class TenantRepository(Protocol):
    async def get_by_tenant_id(self, tenant_id: UUID) -> Optional[Tenant]:
        ...


class UserRepository(Protocol):
    async def get_by_upn_and_tenant_id(self, upn: str, tenant_id: UUID) -> Optional[User]:
        ...


class InMemoryTenantRepository:
    """Tenant lookups over a dict keyed by tenant id."""

    def __init__(self, tenants: Iterable[Tenant] = ()):
        self._tenants: Dict[UUID, Tenant] = {tenant.tenant_id: tenant for tenant in tenants}
        self._lock = asyncio.Lock()

    async def get_by_tenant_id(self, tenant_id: UUID) -> Optional[Tenant]:
        async with self._lock:
            return self._tenants.get(tenant_id)

    async def add(self, tenant: Tenant) -> None:
        async with self._lock:
            self._tenants[tenant.tenant_id] = tenant
        logger.info("Tenant onboarded", extra={"tenant_id": str(tenant.tenant_id)})


class InMemoryUserRepository:
    """
    User lookups over a dict keyed by (lowercased upn, tenant id).

    UPNs are compared case-insensitively, the way Azure AD treats them.
    """

    def __init__(self, users: Iterable[User] = ()):
        self._users: Dict[Tuple[str, UUID], User] = {
            (user.upn.lower(), user.tenant_id): user for user in users
        }
        self._lock = asyncio.Lock()

    async def get_by_upn_and_tenant_id(self, upn: str, tenant_id: UUID) -> Optional[User]:
        async with self._lock:
            return self._users.get((upn.lower(), tenant_id))

    async def add(self, user: User) -> None:
        async with self._lock:
            self._users[(user.upn.lower(), user.tenant_id)] = user
        logger.info("User onboarded", extra={"tenant_id": str(user.tenant_id)})
