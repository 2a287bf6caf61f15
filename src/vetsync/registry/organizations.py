"""Organization management for agency and admin tooling.

Organizations are looked up by email domain, created on first unmatched
sign-in, and deactivated rather than deleted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.vetsync.core.exceptions import EntityNotFoundError
from src.vetsync.registry.repository import RegistryRepository
from src.vetsync.registry.schemas import (
    OrganizationAnalytics,
    OrganizationCreate,
    OrganizationRead,
    ProductInstanceRead,
    UserRead,
    UserRole,
)

logger = structlog.get_logger(__name__)


class OrganizationManager:
    """Service layer over the organization rows of the unified registry.

    Args:
        repository: RegistryRepository for persistence.
    """

    def __init__(self, repository: RegistryRepository) -> None:
        self._repo = repository

    async def get_by_domain(self, domain: str) -> OrganizationRead | None:
        return await self._repo.get_organization_by_domain(domain)

    async def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        """Create an organization and log it."""
        organization = await self._repo.create_organization(data)
        logger.info(
            "organization.created",
            organization_id=organization.id,
            domain=organization.domain,
            tier=organization.subscription_tier,
        )
        return organization

    async def add_user_to_organization(
        self,
        user_id: str,
        organization_id: str,
        role: UserRole = UserRole.CLINIC_USER,
    ) -> None:
        """Move a user into an organization with the given primary role.

        Raises:
            EntityNotFoundError: If the user does not exist.
        """
        updated = await self._repo.set_user_organization(user_id, organization_id, role.value)
        if not updated:
            raise EntityNotFoundError("User", user_id)
        logger.info(
            "organization.user_added",
            organization_id=organization_id,
            user_id=user_id,
            role=role.value,
        )

    async def update_settings(
        self, organization_id: str, settings: dict[str, Any]
    ) -> OrganizationRead:
        """Replace an organization's settings.

        Raises:
            EntityNotFoundError: If the organization does not exist.
        """
        organization = await self._repo.update_organization_settings(organization_id, settings)
        if organization is None:
            raise EntityNotFoundError("Organization", organization_id)
        return organization

    async def get_organization_users(self, organization_id: str) -> list[UserRead]:
        return await self._repo.list_organization_users(organization_id)

    async def get_organization_products(self, organization_id: str) -> list[ProductInstanceRead]:
        """Products enabled on the organization's clinics (active instances only)."""
        return await self._repo.list_organization_product_instances(organization_id)

    async def get_analytics(self, organization_id: str) -> OrganizationAnalytics:
        """Headline user / clinic / active product counts."""
        return OrganizationAnalytics(
            total_users=await self._repo.count_organization_users(organization_id),
            total_clinics=await self._repo.count_active_clinics(organization_id),
            active_products=await self._repo.count_active_product_instances(organization_id),
            last_updated=datetime.now(timezone.utc),
        )

    async def search_organizations(self, query: str, limit: int = 20) -> list[OrganizationRead]:
        return await self._repo.search_organizations(query, limit=limit)

    async def deactivate_organization(self, organization_id: str) -> None:
        """Flip an organization to inactive. Organizations are never deleted.

        Raises:
            EntityNotFoundError: If the organization does not exist.
        """
        if not await self._repo.set_organization_active(organization_id, False):
            raise EntityNotFoundError("Organization", organization_id)
        logger.info("organization.deactivated", organization_id=organization_id)
