"""Unified registry repositories -- async CRUD over the cross-product tables.

Provides:
- RegistryRepository: organizations, users, products, access grants, clinics
- ClientRepository: clinic clients and appointments

Both use the session_factory callable pattern: every method opens one
session from the factory, does its work, commits, and converts ORM rows
to Pydantic read schemas before returning. Writes publish a row change
notification when a ChangeNotifier is configured.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.vetsync.core.realtime import ChangeNotifier
from src.vetsync.registry.models import (
    AppointmentModel,
    ClientModel,
    ClinicProductInstanceModel,
    OrganizationModel,
    ProductAccessModel,
    ProductModel,
    UnifiedClinicModel,
    UnifiedUserModel,
)
from src.vetsync.registry.schemas import (
    ClientCreate,
    ClientRead,
    ClinicData,
    ClinicRead,
    OrganizationCreate,
    OrganizationRead,
    ProductAccessRead,
    ProductInstanceRead,
    ProductRead,
    UserCreate,
    UserRead,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Helpers ─────────────────────────────────────────────────────────────────


def normalize_email(email: str) -> str:
    """Lower-case and trim an email for registry lookups."""
    return email.strip().lower()


def email_domain(email: str) -> str:
    """Return the domain part of an email address, lower-cased."""
    return normalize_email(email).rsplit("@", 1)[-1]


def _uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _prepare_partial_update(model_cls: type, fields: dict[str, Any]) -> dict[str, Any]:
    """Validate and coerce a partial-update payload against a model's columns.

    Raises:
        ValueError: If the payload names a column the table does not have,
            or tries to change the primary key / creation timestamp.
    """
    table = model_cls.__table__
    writable = {name for name in table.columns.keys() if name not in ("id", "created_at")}
    unknown = sorted(set(fields) - writable)
    if unknown:
        raise ValueError(f"Unknown {table.name} fields: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for name, value in fields.items():
        column_type = table.columns[name].type
        if isinstance(column_type, PG_UUID) and value is not None:
            value = _uuid(value)
        values[name] = value

    if "updated_at" in writable:
        values["updated_at"] = datetime.now(timezone.utc)
    return values


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_organization(model: OrganizationModel) -> OrganizationRead:
    """Convert OrganizationModel to OrganizationRead schema."""
    return OrganizationRead(
        id=str(model.id),
        name=model.name,
        domain=model.domain,
        subscription_tier=model.subscription_tier or "basic",
        settings=model.settings or {},
        active=model.active if model.active is not None else True,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_clinic(model: UnifiedClinicModel) -> ClinicRead:
    """Convert UnifiedClinicModel to ClinicRead schema."""
    return ClinicRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        address=model.address,
        phone=model.phone,
        email=model.email,
        active=model.active if model.active is not None else True,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_user(
    model: UnifiedUserModel,
    organization: OrganizationModel | None = None,
) -> UserRead:
    """Convert UnifiedUserModel (plus optional organization) to UserRead."""
    return UserRead(
        id=str(model.id),
        email=model.email,
        auth_id=model.auth_id,
        first_name=model.first_name,
        last_name=model.last_name,
        organization_id=str(model.organization_id) if model.organization_id else None,
        primary_role=model.primary_role,
        last_active_at=model.last_active_at,
        organization=_model_to_organization(organization) if organization else None,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_product(model: ProductModel) -> ProductRead:
    """Convert ProductModel to ProductRead schema."""
    return ProductRead(
        id=str(model.id),
        name=model.name,
        version=model.version,
        endpoints=model.endpoints or {},
    )


def _model_to_client(model: ClientModel) -> ClientRead:
    """Convert ClientModel to ClientRead schema."""
    return ClientRead(
        id=str(model.id),
        clinic_id=str(model.clinic_id),
        first_name=model.first_name or "",
        last_name=model.last_name or "",
        email=model.email,
        phone=model.phone,
        address=model.address,
        notes=model.notes,
        ghl_contact_id=model.ghl_contact_id,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class _NotifyingRepository:
    """Shared plumbing: session factory plus optional change notifications."""

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    async def _notify(
        self,
        table: str,
        event: str,
        row_id: Any,
        row: dict[str, Any] | None = None,
    ) -> None:
        # Notifications are advisory re-fetch signals; the write already committed.
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(table, event, row_id, row)
        except Exception:
            logger.warning("registry.notify_failed", table=table, row_id=str(row_id), exc_info=True)

    async def _partial_update(
        self,
        model_cls: type,
        row_id: str,
        fields: dict[str, Any],
    ) -> bool:
        """Apply a partial update to one row. Returns False if no row matched."""
        values = _prepare_partial_update(model_cls, fields)
        async for session in self._session_factory():
            stmt = update(model_cls).where(model_cls.id == _uuid(row_id)).values(**values)
            result = await session.execute(stmt)
            await session.commit()
            updated = (result.rowcount or 0) > 0
        if updated:
            await self._notify(model_cls.__tablename__, "update", row_id)
        return updated


# ── Registry Repository ─────────────────────────────────────────────────────


class RegistryRepository(_NotifyingRepository):
    """Async CRUD for organizations, users, products, grants and clinics.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        notifier: Optional ChangeNotifier for row change signals.
    """

    # ── Users ───────────────────────────────────────────────────────────────

    async def find_user_by_email(self, email: str) -> UserRead | None:
        """Exact lookup of a user by (normalized) email across the registry."""
        async for session in self._session_factory():
            stmt = select(UnifiedUserModel).where(
                UnifiedUserModel.email == normalize_email(email)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_user(model)

    async def get_user(self, user_id: str) -> UserRead | None:
        """Get a user joined with its organization."""
        async for session in self._session_factory():
            stmt = (
                select(UnifiedUserModel, OrganizationModel)
                .outerjoin(
                    OrganizationModel,
                    OrganizationModel.id == UnifiedUserModel.organization_id,
                )
                .where(UnifiedUserModel.id == _uuid(user_id))
            )
            result = await session.execute(stmt)
            row = result.first()
            if row is None:
                return None
            user_model, org_model = row
            return _model_to_user(user_model, org_model)

    async def create_user(self, data: UserCreate) -> UserRead:
        """Insert a new unified user. Email uniqueness is enforced by the table."""
        async for session in self._session_factory():
            model = UnifiedUserModel(
                email=normalize_email(data.email),
                auth_id=data.auth_id,
                first_name=data.first_name,
                last_name=data.last_name,
                organization_id=_uuid(data.organization_id) if data.organization_id else None,
                primary_role=data.primary_role.value,
                last_active_at=datetime.now(timezone.utc) if data.auth_id else None,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            user = _model_to_user(model)
        await self._notify(
            "unified_users", "insert", user.id, {"organization_id": user.organization_id}
        )
        return user

    async def link_auth_id(self, user_id: str, auth_id: str) -> bool:
        """Attach an external auth id to a user.

        Returns:
            True if a write happened, False if the user was already linked
            to this exact auth id.

        Raises:
            LookupError: If the user does not exist.
        """
        async for session in self._session_factory():
            model = await session.get(UnifiedUserModel, _uuid(user_id))
            if model is None:
                raise LookupError(f"Unified user not found: {user_id}")
            if model.auth_id == auth_id:
                return False
            if model.auth_id is not None:
                logger.warning(
                    "registry.auth_id_replaced",
                    user_id=user_id,
                )
            model.auth_id = auth_id
            model.last_active_at = datetime.now(timezone.utc)
            await session.commit()
        await self._notify("unified_users", "update", user_id)
        return True

    async def update_user(self, user_id: str, fields: dict[str, Any]) -> bool:
        """Partial update of a user's profile columns."""
        return await self._partial_update(UnifiedUserModel, user_id, fields)

    async def set_user_organization(
        self, user_id: str, organization_id: str, role: str
    ) -> bool:
        """Move a user into an organization with the given primary role."""
        return await self._partial_update(
            UnifiedUserModel,
            user_id,
            {"organization_id": organization_id, "primary_role": role},
        )

    async def list_organization_users(self, organization_id: str) -> list[UserRead]:
        """List every user in an organization, ordered by email."""
        async for session in self._session_factory():
            stmt = (
                select(UnifiedUserModel)
                .where(UnifiedUserModel.organization_id == _uuid(organization_id))
                .order_by(UnifiedUserModel.email)
            )
            result = await session.execute(stmt)
            return [_model_to_user(m) for m in result.scalars().all()]

    # ── Organizations ───────────────────────────────────────────────────────

    async def get_organization(self, organization_id: str) -> OrganizationRead | None:
        """Get an organization by ID."""
        async for session in self._session_factory():
            model = await session.get(OrganizationModel, _uuid(organization_id))
            if model is None:
                return None
            return _model_to_organization(model)

    async def get_organization_by_domain(self, domain: str) -> OrganizationRead | None:
        """Get the active organization registered for an email domain."""
        async for session in self._session_factory():
            stmt = (
                select(OrganizationModel)
                .where(
                    OrganizationModel.domain == domain.strip().lower(),
                    OrganizationModel.active == True,  # noqa: E712
                )
                .order_by(OrganizationModel.created_at)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_organization(model)

    async def detect_organization_by_email(self, email: str) -> str | None:
        """Return the organization ID matching an email's domain, if any."""
        organization = await self.get_organization_by_domain(email_domain(email))
        return organization.id if organization else None

    async def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        """Insert a new organization."""
        async for session in self._session_factory():
            model = OrganizationModel(
                name=data.name,
                domain=data.domain.strip().lower() if data.domain else None,
                subscription_tier=data.tier,
                settings=data.settings,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            organization = _model_to_organization(model)
        await self._notify("organizations", "insert", organization.id)
        return organization

    async def update_organization_settings(
        self, organization_id: str, settings: dict[str, Any]
    ) -> OrganizationRead | None:
        """Replace an organization's settings map."""
        updated = await self._partial_update(
            OrganizationModel, organization_id, {"settings": settings}
        )
        if not updated:
            return None
        return await self.get_organization(organization_id)

    async def set_organization_active(self, organization_id: str, active: bool) -> bool:
        """Activate or deactivate an organization (never deleted)."""
        return await self._partial_update(
            OrganizationModel, organization_id, {"active": active}
        )

    async def search_organizations(self, query: str, limit: int = 20) -> list[OrganizationRead]:
        """Case-insensitive substring search over organization name and domain."""
        pattern = f"%{query}%"
        async for session in self._session_factory():
            stmt = (
                select(OrganizationModel)
                .where(
                    or_(
                        OrganizationModel.name.ilike(pattern),
                        OrganizationModel.domain.ilike(pattern),
                    )
                )
                .order_by(OrganizationModel.name)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_organization(m) for m in result.scalars().all()]

    async def count_organization_users(self, organization_id: str) -> int:
        """Count users in an organization."""
        async for session in self._session_factory():
            stmt = select(func.count(UnifiedUserModel.id)).where(
                UnifiedUserModel.organization_id == _uuid(organization_id)
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_active_clinics(self, organization_id: str) -> int:
        """Count active clinics in an organization."""
        async for session in self._session_factory():
            stmt = select(func.count(UnifiedClinicModel.id)).where(
                UnifiedClinicModel.organization_id == _uuid(organization_id),
                UnifiedClinicModel.active == True,  # noqa: E712
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_active_product_instances(self, organization_id: str) -> int:
        """Count active product instances across an organization's active clinics."""
        async for session in self._session_factory():
            stmt = (
                select(func.count(ClinicProductInstanceModel.id))
                .join(
                    UnifiedClinicModel,
                    UnifiedClinicModel.id == ClinicProductInstanceModel.clinic_id,
                )
                .where(
                    UnifiedClinicModel.organization_id == _uuid(organization_id),
                    UnifiedClinicModel.active == True,  # noqa: E712
                    ClinicProductInstanceModel.active == True,  # noqa: E712
                )
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_organization_product_instances(
        self, organization_id: str
    ) -> list[ProductInstanceRead]:
        """Active product instances across an organization's clinics, with product and clinic."""
        async for session in self._session_factory():
            stmt = (
                select(ClinicProductInstanceModel, ProductModel, UnifiedClinicModel)
                .join(ProductModel, ProductModel.id == ClinicProductInstanceModel.product_id)
                .join(
                    UnifiedClinicModel,
                    UnifiedClinicModel.id == ClinicProductInstanceModel.clinic_id,
                )
                .where(
                    UnifiedClinicModel.organization_id == _uuid(organization_id),
                    ClinicProductInstanceModel.active == True,  # noqa: E712
                )
                .order_by(UnifiedClinicModel.name, ProductModel.name)
            )
            result = await session.execute(stmt)
            return [
                ProductInstanceRead(
                    id=str(instance.id),
                    clinic_id=str(instance.clinic_id),
                    product_id=str(instance.product_id),
                    active=instance.active,
                    created_at=instance.created_at,
                    product=_model_to_product(product),
                    clinic=_model_to_clinic(clinic),
                )
                for instance, product, clinic in result.all()
            ]

    # ── Products and Access ─────────────────────────────────────────────────

    async def get_product_by_name(self, name: str) -> ProductRead | None:
        """Look up a catalog product by its exact name."""
        async for session in self._session_factory():
            stmt = select(ProductModel).where(ProductModel.name == name)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_product(model)

    async def upsert_product_access(
        self,
        user_id: str,
        product_id: str,
        organization_id: str | None,
        role: str,
        entity_access: dict[str, Any] | None = None,
    ) -> str:
        """Grant (or re-grant) a product to a user. Returns the grant ID."""
        values = {
            "user_id": _uuid(user_id),
            "product_id": _uuid(product_id),
            "organization_id": _uuid(organization_id) if organization_id else None,
            "role": role,
            "entity_access": entity_access or {},
            "active": True,
        }
        stmt = (
            pg_insert(ProductAccessModel)
            .values(**values)
            .on_conflict_do_update(
                index_elements=["user_id", "product_id"],
                set_={
                    "organization_id": values["organization_id"],
                    "role": role,
                    "entity_access": values["entity_access"],
                    "active": True,
                },
            )
            .returning(ProductAccessModel.id)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            grant_id = str(result.scalar_one())
            await session.commit()
        await self._notify(
            "user_product_access", "update", grant_id, {"user_id": str(user_id)}
        )
        return grant_id

    async def update_product_access(
        self, user_id: str, product_id: str, fields: dict[str, Any]
    ) -> bool:
        """Partial update of the grant for (user, product)."""
        values = _prepare_partial_update(ProductAccessModel, fields)
        async for session in self._session_factory():
            stmt = (
                update(ProductAccessModel)
                .where(
                    ProductAccessModel.user_id == _uuid(user_id),
                    ProductAccessModel.product_id == _uuid(product_id),
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            await session.commit()
            updated = (result.rowcount or 0) > 0
        if updated:
            await self._notify("user_product_access", "update", user_id, {"user_id": user_id})
        return updated

    async def list_active_product_access(self, user_id: str) -> list[ProductAccessRead]:
        """Active grants for a user, joined with product and scoped clinic."""
        async for session in self._session_factory():
            stmt = (
                select(ProductAccessModel, ProductModel)
                .join(ProductModel, ProductModel.id == ProductAccessModel.product_id)
                .where(
                    ProductAccessModel.user_id == _uuid(user_id),
                    ProductAccessModel.active == True,  # noqa: E712
                )
                .order_by(ProductModel.name)
            )
            result = await session.execute(stmt)
            rows = result.all()

            clinic_ids: set[uuid.UUID] = set()
            for access, _product in rows:
                scoped = (access.entity_access or {}).get("clinic_ids") or []
                if scoped:
                    clinic_ids.add(_uuid(scoped[0]))

            clinics: dict[str, ClinicRead] = {}
            if clinic_ids:
                clinic_result = await session.execute(
                    select(UnifiedClinicModel).where(UnifiedClinicModel.id.in_(clinic_ids))
                )
                clinics = {
                    str(m.id): _model_to_clinic(m) for m in clinic_result.scalars().all()
                }

            grants: list[ProductAccessRead] = []
            for access, product in rows:
                scoped = (access.entity_access or {}).get("clinic_ids") or []
                grants.append(
                    ProductAccessRead(
                        id=str(access.id),
                        user_id=str(access.user_id),
                        product_id=str(access.product_id),
                        organization_id=(
                            str(access.organization_id) if access.organization_id else None
                        ),
                        role=access.role,
                        entity_access=access.entity_access or {},
                        active=access.active,
                        product=_model_to_product(product),
                        clinic=clinics.get(str(scoped[0])) if scoped else None,
                    )
                )
            return grants

    # ── Clinics ─────────────────────────────────────────────────────────────

    async def get_clinic(self, clinic_id: str) -> ClinicRead | None:
        """Get a clinic by ID."""
        async for session in self._session_factory():
            model = await session.get(UnifiedClinicModel, _uuid(clinic_id))
            if model is None:
                return None
            return _model_to_clinic(model)

    async def list_active_clinics(self, organization_id: str) -> list[ClinicRead]:
        """Active clinics of an organization, in creation order."""
        async for session in self._session_factory():
            stmt = (
                select(UnifiedClinicModel)
                .where(
                    UnifiedClinicModel.organization_id == _uuid(organization_id),
                    UnifiedClinicModel.active == True,  # noqa: E712
                )
                .order_by(UnifiedClinicModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_clinic(m) for m in result.scalars().all()]

    async def find_clinic_by_name(self, organization_id: str, name: str) -> ClinicRead | None:
        """Exact-name lookup of an active clinic within an organization."""
        async for session in self._session_factory():
            stmt = (
                select(UnifiedClinicModel)
                .where(
                    UnifiedClinicModel.organization_id == _uuid(organization_id),
                    UnifiedClinicModel.name == name,
                    UnifiedClinicModel.active == True,  # noqa: E712
                )
                .order_by(UnifiedClinicModel.created_at)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_clinic(model)

    async def create_clinic(self, organization_id: str, data: ClinicData) -> ClinicRead:
        """Insert a clinic under an organization."""
        async for session in self._session_factory():
            model = UnifiedClinicModel(
                organization_id=_uuid(organization_id),
                name=data.name,
                address=data.address,
                phone=data.phone,
                email=data.email,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            clinic = _model_to_clinic(model)
        await self._notify(
            "unified_clinics", "insert", clinic.id, {"organization_id": organization_id}
        )
        return clinic

    async def update_clinic(self, clinic_id: str, fields: dict[str, Any]) -> bool:
        """Partial update of a clinic."""
        return await self._partial_update(UnifiedClinicModel, clinic_id, fields)

    async def create_product_instance(self, clinic_id: str, product_id: str) -> None:
        """Enable a product for a clinic (no-op if already enabled)."""
        stmt = (
            pg_insert(ClinicProductInstanceModel)
            .values(clinic_id=_uuid(clinic_id), product_id=_uuid(product_id), active=True)
            .on_conflict_do_nothing(index_elements=["clinic_id", "product_id"])
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()


# ── Client Repository ───────────────────────────────────────────────────────


class ClientRepository(_NotifyingRepository):
    """Async CRUD for clinic clients and appointments.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        notifier: Optional ChangeNotifier for row change signals.
    """

    async def find_client_by_email(self, clinic_id: str, email: str | None) -> ClientRead | None:
        """Find a client in a clinic by email. A missing email never matches."""
        if not email:
            return None
        async for session in self._session_factory():
            stmt = select(ClientModel).where(
                ClientModel.clinic_id == _uuid(clinic_id),
                ClientModel.email == email,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_client(model)

    async def create_client(self, data: ClientCreate) -> ClientRead:
        """Insert a client. Fails on a NULL email or a duplicate (clinic, email)."""
        async for session in self._session_factory():
            model = ClientModel(
                clinic_id=_uuid(data.clinic_id),
                first_name=data.first_name,
                last_name=data.last_name,
                email=data.email,
                phone=data.phone,
                address=data.address,
                notes=data.notes,
                ghl_contact_id=data.ghl_contact_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            client = _model_to_client(model)
        await self._notify("clients", "insert", client.id, {"clinic_id": client.clinic_id})
        return client

    async def update_client(self, client_id: str, fields: dict[str, Any]) -> bool:
        """Partial update of a client."""
        return await self._partial_update(ClientModel, client_id, fields)

    async def set_ghl_contact_id(self, client_id: str, ghl_contact_id: str) -> bool:
        """Record the GHL contact ID created for a client."""
        return await self._partial_update(
            ClientModel, client_id, {"ghl_contact_id": ghl_contact_id}
        )

    async def list_clinic_clients(self, clinic_id: str) -> list[ClientRead]:
        """All clients of a clinic, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(ClientModel)
                .where(ClientModel.clinic_id == _uuid(clinic_id))
                .order_by(ClientModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_client(m) for m in result.scalars().all()]

    async def update_appointment(self, appointment_id: str, fields: dict[str, Any]) -> bool:
        """Partial update of an appointment."""
        return await self._partial_update(AppointmentModel, appointment_id, fields)
