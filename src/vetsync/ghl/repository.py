"""GHLRepository -- async persistence for credentials, sub-accounts, mappings and sync logs.

Credentials and sub-accounts are written with PostgreSQL upserts so
repeated token refreshes and repeated discovery runs never create
duplicate rows.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.vetsync.core.exceptions import EntityNotFoundError
from src.vetsync.ghl.models import (
    GHLClinicMappingModel,
    GHLCredentialModel,
    GHLSubAccountModel,
    GHLSyncLogModel,
)
from src.vetsync.ghl.schemas import (
    GHLClinicMappingRead,
    GHLCredentialRead,
    GHLSubAccountRead,
    GHLSyncLogRead,
    TokenResponse,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

DEFAULT_PROVIDER = "ghl"


def _parse_id(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


# ── Statement Builders ──────────────────────────────────────────────────────


def credential_upsert(token: TokenResponse, provider: str = DEFAULT_PROVIDER, now: datetime | None = None):
    """INSERT ... ON CONFLICT (provider) DO UPDATE for a token set.

    A refresh response without a refresh_token keeps the stored one.
    """
    now = now or datetime.now(timezone.utc)
    values = {
        "provider": provider,
        "access_token": token.access_token,
        "refresh_token": token.refresh_token,
        "expires_at": now + timedelta(seconds=token.expires_in),
        "token_type": token.token_type,
        "scope": token.scope,
        "location_id": token.location_id,
        "user_id": token.user_id,
        "company_id": token.company_id,
        "updated_at": now,
    }
    stmt = pg_insert(GHLCredentialModel).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=["provider"],
        set_={
            "access_token": stmt.excluded.access_token,
            "refresh_token": func.coalesce(
                stmt.excluded.refresh_token, GHLCredentialModel.refresh_token
            ),
            "expires_at": stmt.excluded.expires_at,
            "token_type": stmt.excluded.token_type,
            "scope": stmt.excluded.scope,
            "location_id": stmt.excluded.location_id,
            "user_id": stmt.excluded.user_id,
            "company_id": stmt.excluded.company_id,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(GHLCredentialModel)


def sub_account_values(location: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Map a GHL location payload to ghl_sub_accounts column values."""
    return {
        "ghl_location_id": location["id"],
        "name": location.get("name"),
        "business_name": location.get("businessName"),
        "phone": location.get("phone"),
        "email": location.get("email"),
        "website": location.get("website"),
        "address": location.get("address"),
        "city": location.get("city"),
        "state": location.get("state"),
        "postal_code": location.get("postalCode"),
        "country": location.get("country"),
        "timezone": location.get("timezone"),
        "active": True,
        "last_synced": now or datetime.now(timezone.utc),
    }


def sub_account_upsert(location: dict[str, Any], now: datetime | None = None):
    """INSERT ... ON CONFLICT (ghl_location_id) DO UPDATE for one location."""
    values = sub_account_values(location, now)
    stmt = pg_insert(GHLSubAccountModel).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=["ghl_location_id"],
        set_={
            key: getattr(stmt.excluded, key)
            for key in values
            if key != "ghl_location_id"
        },
    ).returning(GHLSubAccountModel)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_credential(model: GHLCredentialModel) -> GHLCredentialRead:
    return GHLCredentialRead(
        id=str(model.id),
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        expires_at=model.expires_at,
        token_type=model.token_type,
        scope=model.scope,
        location_id=model.location_id,
        user_id=model.user_id,
        company_id=model.company_id,
        updated_at=model.updated_at,
    )


def _model_to_sub_account(model: GHLSubAccountModel) -> GHLSubAccountRead:
    return GHLSubAccountRead(
        id=str(model.id),
        ghl_location_id=model.ghl_location_id,
        name=model.name,
        business_name=model.business_name,
        phone=model.phone,
        email=model.email,
        website=model.website,
        address=model.address,
        city=model.city,
        state=model.state,
        postal_code=model.postal_code,
        country=model.country,
        timezone=model.timezone,
        active=model.active if model.active is not None else True,
        last_synced=model.last_synced,
    )


def _model_to_mapping(
    model: GHLClinicMappingModel,
    sub_account: GHLSubAccountModel | None = None,
) -> GHLClinicMappingRead:
    return GHLClinicMappingRead(
        id=str(model.id),
        clinic_id=str(model.clinic_id),
        ghl_sub_account_id=str(model.ghl_sub_account_id),
        active=model.active if model.active is not None else True,
        mapped_by=model.mapped_by,
        created_at=model.created_at,
        sub_account=_model_to_sub_account(sub_account) if sub_account else None,
    )


def _model_to_sync_log(model: GHLSyncLogModel) -> GHLSyncLogRead:
    return GHLSyncLogRead(
        id=str(model.id),
        clinic_mapping_id=str(model.clinic_mapping_id),
        sync_type=model.sync_type,
        entity_type=model.entity_type or "contact",
        entity_id=model.entity_id,
        status=model.status,
        sync_data=model.sync_data or {},
        error_message=model.error_message,
        created_at=model.created_at,
        processed_at=model.processed_at,
    )


class GHLRepository:
    """Async CRUD for the GHL integration tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Credentials ─────────────────────────────────────────────────────────

    async def get_credential(self, provider: str = DEFAULT_PROVIDER) -> GHLCredentialRead | None:
        """Read the single stored token set, if any."""
        async for session in self._session_factory():
            stmt = select(GHLCredentialModel).where(GHLCredentialModel.provider == provider)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_credential(model)

    async def save_credential(
        self, token: TokenResponse, provider: str = DEFAULT_PROVIDER
    ) -> GHLCredentialRead:
        """Upsert the token set; expiry is now + expires_in."""
        async for session in self._session_factory():
            result = await session.execute(credential_upsert(token, provider))
            model = result.scalars().one()
            await session.commit()
            credential = _model_to_credential(model)
        logger.info(
            "ghl.credential_saved",
            expires_at=credential.expires_at.isoformat(),
            location_id=credential.location_id,
        )
        return credential

    # ── Sub-Accounts ────────────────────────────────────────────────────────

    async def store_sub_account(self, location: dict[str, Any]) -> GHLSubAccountRead:
        """Upsert one discovered location keyed by its GHL location id."""
        async for session in self._session_factory():
            result = await session.execute(sub_account_upsert(location))
            model = result.scalars().one()
            await session.commit()
            return _model_to_sub_account(model)

    async def list_sub_accounts(self) -> list[GHLSubAccountRead]:
        """All discovered sub-accounts, ordered by name."""
        async for session in self._session_factory():
            stmt = select(GHLSubAccountModel).order_by(GHLSubAccountModel.name)
            result = await session.execute(stmt)
            return [_model_to_sub_account(m) for m in result.scalars().all()]

    async def get_sub_account(self, sub_account_id: str) -> GHLSubAccountRead | None:
        sub_account_uuid = _parse_id(sub_account_id)
        if sub_account_uuid is None:
            return None
        async for session in self._session_factory():
            model = await session.get(GHLSubAccountModel, sub_account_uuid)
            if model is None:
                return None
            return _model_to_sub_account(model)

    # ── Clinic Mappings ─────────────────────────────────────────────────────

    async def create_mapping(
        self,
        clinic_id: str,
        ghl_sub_account_id: str,
        mapped_by: str | None = None,
    ) -> GHLClinicMappingRead:
        """Make ``ghl_sub_account_id`` the clinic's active mapping.

        Any other active mapping for the clinic is deactivated in the same
        transaction.

        Raises:
            EntityNotFoundError: If either id is not a valid UUID.
        """
        clinic_uuid = _parse_id(clinic_id)
        if clinic_uuid is None:
            raise EntityNotFoundError("Clinic", clinic_id)
        sub_account_uuid = _parse_id(ghl_sub_account_id)
        if sub_account_uuid is None:
            raise EntityNotFoundError("GHL sub-account", ghl_sub_account_id)
        async for session in self._session_factory():
            await session.execute(
                update(GHLClinicMappingModel)
                .where(
                    GHLClinicMappingModel.clinic_id == clinic_uuid,
                    GHLClinicMappingModel.ghl_sub_account_id != sub_account_uuid,
                    GHLClinicMappingModel.active == True,  # noqa: E712
                )
                .values(active=False)
            )
            stmt = (
                pg_insert(GHLClinicMappingModel)
                .values(
                    clinic_id=clinic_uuid,
                    ghl_sub_account_id=sub_account_uuid,
                    active=True,
                    mapped_by=mapped_by,
                )
                .on_conflict_do_update(
                    index_elements=["clinic_id", "ghl_sub_account_id"],
                    set_={"active": True, "mapped_by": mapped_by},
                )
                .returning(GHLClinicMappingModel)
            )
            result = await session.execute(stmt)
            model = result.scalars().one()
            sub_account = await session.get(GHLSubAccountModel, sub_account_uuid)
            await session.commit()
            mapping = _model_to_mapping(model, sub_account)
        logger.info(
            "ghl.mapping_created",
            clinic_id=str(clinic_id),
            sub_account_id=str(ghl_sub_account_id),
            mapped_by=mapped_by,
        )
        return mapping

    async def get_active_mapping(self, clinic_id: str) -> GHLClinicMappingRead | None:
        """The clinic's active mapping joined with its sub-account. Malformed ids find nothing."""
        clinic_uuid = _parse_id(clinic_id)
        if clinic_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = (
                select(GHLClinicMappingModel, GHLSubAccountModel)
                .outerjoin(
                    GHLSubAccountModel,
                    GHLSubAccountModel.id == GHLClinicMappingModel.ghl_sub_account_id,
                )
                .where(
                    GHLClinicMappingModel.clinic_id == clinic_uuid,
                    GHLClinicMappingModel.active == True,  # noqa: E712
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            row = result.first()
            if row is None:
                return None
            mapping, sub_account = row
            return _model_to_mapping(mapping, sub_account)

    async def list_mappings(self) -> list[GHLClinicMappingRead]:
        """Every mapping (active and inactive), newest first."""
        async for session in self._session_factory():
            stmt = (
                select(GHLClinicMappingModel, GHLSubAccountModel)
                .outerjoin(
                    GHLSubAccountModel,
                    GHLSubAccountModel.id == GHLClinicMappingModel.ghl_sub_account_id,
                )
                .order_by(GHLClinicMappingModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_mapping(m, s) for m, s in result.all()]

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def log_sync(
        self,
        clinic_mapping_id: str,
        sync_type: str,
        status: str,
        sync_data: dict[str, Any],
        error_message: str | None = None,
        entity_type: str = "contact",
    ) -> GHLSyncLogRead:
        """Append a sync log entry, stamped as processed now."""
        async for session in self._session_factory():
            model = GHLSyncLogModel(
                clinic_mapping_id=uuid.UUID(str(clinic_mapping_id)),
                sync_type=sync_type,
                entity_type=entity_type,
                status=status,
                sync_data=sync_data,
                error_message=error_message,
                processed_at=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)

    async def list_sync_logs_for_clinic(self, clinic_id: str, limit: int = 10) -> list[GHLSyncLogRead]:
        """Newest-first sync log across all of a clinic's mappings."""
        clinic_uuid = _parse_id(clinic_id)
        if clinic_uuid is None:
            return []
        async for session in self._session_factory():
            stmt = (
                select(GHLSyncLogModel)
                .join(
                    GHLClinicMappingModel,
                    GHLClinicMappingModel.id == GHLSyncLogModel.clinic_mapping_id,
                )
                .where(GHLClinicMappingModel.clinic_id == clinic_uuid)
                .order_by(GHLSyncLogModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]

    async def list_sync_logs(self, limit: int = 50, offset: int = 0) -> list[GHLSyncLogRead]:
        """Paginated newest-first sync log across every mapping."""
        async for session in self._session_factory():
            stmt = (
                select(GHLSyncLogModel)
                .order_by(GHLSyncLogModel.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]
