"""Cross-product user resolver -- first-contact identity resolution.

When someone authenticates through any product in the suite, the resolver
places them in the unified registry before any dashboard loads:

1. Known email: link the auth id (idempotent) and load their context.
2. Unknown email, known domain: create the user inside the matching
   organization with the default clinic_user role and grant.
3. Unknown domain: create a new organization named after the domain and
   make the user its admin.

Database errors are never swallowed here. Every dashboard relies on
organization scoping, so there is no "proceed without organization" path.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from src.vetsync.config import get_settings
from src.vetsync.core.exceptions import ConfigurationError, EntityNotFoundError
from src.vetsync.datasync.schemas import SyncEntityType
from src.vetsync.registry.matching import find_best_match
from src.vetsync.registry.repository import (
    RegistryRepository,
    email_domain,
    normalize_email,
)
from src.vetsync.registry.schemas import (
    ClinicData,
    ClinicRead,
    OrganizationCreate,
    ProductAccessRead,
    UserContext,
    UserCreate,
    UserRole,
)

if TYPE_CHECKING:
    from src.vetsync.datasync.queue import DataSyncQueue

logger = structlog.get_logger(__name__)


def first_name_from_email(email: str) -> str:
    """Derive a display first name from an email local part ("jane.doe@x" -> "jane")."""
    return email.split("@", 1)[0].split(".", 1)[0]


class CrossProductUserResolver:
    """Resolve authenticated identities into unified registry users.

    Args:
        repository: RegistryRepository for all registry reads and writes.
        queue: DataSyncQueue used to propagate user edits to sibling products.
        current_product: Catalog name of the product this deployment serves.
            Defaults to the CURRENT_PRODUCT setting.
    """

    def __init__(
        self,
        repository: RegistryRepository,
        queue: DataSyncQueue | None = None,
        current_product: str | None = None,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._current_product = current_product or get_settings().CURRENT_PRODUCT

    @property
    def current_product(self) -> str:
        return self._current_product

    # ── Recognition ─────────────────────────────────────────────────────────

    async def recognize_user(self, email: str, auth_id: str) -> UserContext:
        """Find, link or create the unified user for an authenticated identity.

        Args:
            email: Email the identity signed in with.
            auth_id: External auth provider subject id.

        Returns:
            Fully loaded UserContext for the resolved user.
        """
        email = normalize_email(email)

        existing = await self._repo.find_user_by_email(email)
        if existing is not None:
            if await self._repo.link_auth_id(existing.id, auth_id):
                logger.info("identity.user_linked", user_id=existing.id)
            return await self.load_user_context(existing.id)

        organization_id = await self._repo.detect_organization_by_email(email)
        if organization_id is not None:
            return await self._create_user_in_organization(email, auth_id, organization_id)

        return await self._create_user_and_organization(email, auth_id)

    async def _create_user_in_organization(
        self, email: str, auth_id: str, organization_id: str
    ) -> UserContext:
        user = await self._repo.create_user(
            UserCreate(
                email=email,
                auth_id=auth_id,
                first_name=first_name_from_email(email),
                organization_id=organization_id,
                primary_role=UserRole.CLINIC_USER,
            )
        )
        await self.grant_product_access(user.id, self._current_product, UserRole.CLINIC_USER)
        logger.info(
            "identity.user_created",
            user_id=user.id,
            organization_id=organization_id,
            matched_by="domain",
        )
        return await self.load_user_context(user.id)

    async def _create_user_and_organization(self, email: str, auth_id: str) -> UserContext:
        domain = email_domain(email)
        organization = await self._repo.create_organization(
            OrganizationCreate(name=f"{domain} Organization", domain=domain)
        )
        user = await self._repo.create_user(
            UserCreate(
                email=email,
                auth_id=auth_id,
                first_name=first_name_from_email(email),
                organization_id=organization.id,
                primary_role=UserRole.ORGANIZATION_ADMIN,
            )
        )
        await self.grant_product_access(user.id, self._current_product, UserRole.AGENCY_ADMIN)
        logger.info(
            "identity.organization_created",
            user_id=user.id,
            organization_id=organization.id,
            domain=domain,
        )
        return await self.load_user_context(user.id)

    # ── Context ─────────────────────────────────────────────────────────────

    async def load_user_context(self, user_id: str) -> UserContext:
        """Compose the user, active grants and organization clinics.

        Raises:
            EntityNotFoundError: If the user does not exist.
        """
        user = await self._repo.get_user(user_id)
        if user is None:
            raise EntityNotFoundError("User", user_id)

        product_access = await self._repo.list_active_product_access(user_id)
        clinics: list[ClinicRead] = []
        if user.organization_id:
            clinics = await self._repo.list_active_clinics(user.organization_id)

        return UserContext(user=user, product_access=product_access, clinics=clinics)

    # ── Product Access ──────────────────────────────────────────────────────

    async def grant_product_access(
        self,
        user_id: str,
        product_name: str,
        role: UserRole,
        clinic_id: str | None = None,
    ) -> str:
        """Grant a catalog product to a user, optionally scoped to one clinic.

        Returns:
            The grant ID.

        Raises:
            EntityNotFoundError: If the product or the user does not exist.
        """
        product = await self._repo.get_product_by_name(product_name)
        if product is None:
            raise EntityNotFoundError("Product", product_name)
        user = await self._repo.get_user(user_id)
        if user is None:
            raise EntityNotFoundError("User", user_id)

        grant_id = await self._repo.upsert_product_access(
            user_id=user_id,
            product_id=product.id,
            organization_id=user.organization_id,
            role=role.value,
            entity_access={"clinic_ids": [clinic_id]} if clinic_id else {},
        )
        logger.info(
            "identity.access_granted",
            user_id=user_id,
            product=product_name,
            role=role.value,
        )
        return grant_id

    async def get_user_product_summary(self, user_id: str) -> list[ProductAccessRead]:
        return await self._repo.list_active_product_access(user_id)

    # ── Clinics ─────────────────────────────────────────────────────────────

    async def find_or_create_clinic(self, data: ClinicData, organization_id: str) -> ClinicRead:
        """Resolve a clinic by exact name, then fuzzy name, else create it.

        A newly created clinic also gets an instance of the current product.
        """
        clinic = await self._repo.find_clinic_by_name(organization_id, data.name)
        if clinic is not None:
            return clinic

        candidates = await self._repo.list_active_clinics(organization_id)
        match = find_best_match(data.name, candidates, key=lambda c: c.name)
        if match is not None:
            clinic, score = match
            logger.info(
                "identity.clinic_fuzzy_matched",
                requested=data.name,
                matched=clinic.name,
                score=round(score, 3),
            )
            return clinic

        product = await self._repo.get_product_by_name(self._current_product)
        if product is None:
            raise EntityNotFoundError("Product", self._current_product)
        clinic = await self._repo.create_clinic(organization_id, data)
        await self._repo.create_product_instance(clinic.id, product.id)
        logger.info(
            "identity.clinic_created",
            clinic_id=clinic.id,
            organization_id=organization_id,
        )
        return clinic

    # ── Propagation ─────────────────────────────────────────────────────────

    async def sync_user_data(
        self,
        user_id: str,
        changes: dict[str, Any],
        target_products: list[str] | None = None,
    ) -> list[str]:
        """Queue a user edit for every target product.

        Defaults to every product the user holds an active grant for,
        except the current product (the source of the edit).

        Returns:
            IDs of the queued sync log entries.
        """
        if self._queue is None:
            raise ConfigurationError("Data sync queue is not configured")

        if target_products:
            targets = list(target_products)
        else:
            grants = await self._repo.list_active_product_access(user_id)
            targets = [
                g.product.name for g in grants if g.product.name != self._current_product
            ]

        queued: list[str] = []
        for product_name in targets:
            entry = await self._queue.queue_sync(
                self._current_product,
                product_name,
                SyncEntityType.USER,
                user_id,
                changes,
            )
            queued.append(entry.id)
        logger.info("identity.user_changes_queued", user_id=user_id, targets=targets)
        return queued
