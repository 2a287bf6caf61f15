"""Shared test doubles and fixtures.

Provides in-memory stand-ins for the repositories and the OAuth state
store so services can be exercised without PostgreSQL or Redis:
- InMemoryRegistry: RegistryRepository + ClientRepository behaviour
- InMemoryDataSyncRepository: data_sync_log with claim / mark semantics
- InMemoryGHLRepository: credentials, sub-accounts, mappings, sync log
- InMemoryStateStore: OAuthStateStore
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.vetsync.config import Settings
from src.vetsync.datasync.schemas import DataSyncEntry, SyncStatus, SyncType
from src.vetsync.ghl.schemas import (
    GHLClinicMappingRead,
    GHLCredentialRead,
    GHLSubAccountRead,
    GHLSyncLogRead,
    TokenResponse,
)
from src.vetsync.registry.schemas import (
    AppointmentRead,
    ClientCreate,
    ClientRead,
    ClinicData,
    ClinicRead,
    OrganizationCreate,
    OrganizationRead,
    ProductAccessRead,
    ProductInstanceRead,
    ProductName,
    ProductRead,
    UserCreate,
    UserRead,
)

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _Clock:
    """Strictly increasing timestamps so ordering by created_at is stable."""

    def __init__(self) -> None:
        self._ticks = 0

    def now(self) -> datetime:
        self._ticks += 1
        return BASE_TIME + timedelta(seconds=self._ticks)


def _check_fields(model_cls: type, fields: dict[str, Any]) -> None:
    unknown = sorted(set(fields) - set(model_cls.model_fields) | ({"id"} & set(fields)))
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(unknown)}")


# ── Registry ─────────────────────────────────────────────────────────────────


class InMemoryRegistry:
    """In-memory RegistryRepository and ClientRepository for testing."""

    def __init__(self) -> None:
        self.clock = _Clock()
        self.organizations: dict[str, OrganizationRead] = {}
        self.users: dict[str, UserRead] = {}
        self.products: dict[str, ProductRead] = {}
        self.grants: dict[tuple[str, str], ProductAccessRead] = {}
        self.clinics: dict[str, ClinicRead] = {}
        self.product_instances: set[tuple[str, str]] = set()
        self.clients: dict[str, ClientRead] = {}
        self.appointments: dict[str, AppointmentRead] = {}
        self.link_writes = 0
        for name in ProductName:
            product = ProductRead(id=str(uuid.uuid4()), name=name.value)
            self.products[product.id] = product

    # Users

    async def find_user_by_email(self, email: str) -> UserRead | None:
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    async def get_user(self, user_id: str) -> UserRead | None:
        user = self.users.get(user_id)
        if user is None:
            return None
        organization = self.organizations.get(user.organization_id or "")
        return user.model_copy(update={"organization": organization})

    async def create_user(self, data: UserCreate) -> UserRead:
        if await self.find_user_by_email(data.email) is not None:
            raise ValueError(f"duplicate email: {data.email}")
        user = UserRead(
            id=str(uuid.uuid4()),
            email=data.email,
            auth_id=data.auth_id,
            first_name=data.first_name,
            last_name=data.last_name,
            organization_id=data.organization_id,
            primary_role=data.primary_role.value,
            created_at=self.clock.now(),
        )
        self.users[user.id] = user
        return user

    async def link_auth_id(self, user_id: str, auth_id: str) -> bool:
        user = self.users.get(user_id)
        if user is None:
            raise LookupError(f"Unified user not found: {user_id}")
        if user.auth_id == auth_id:
            return False
        self.link_writes += 1
        self.users[user_id] = user.model_copy(
            update={"auth_id": auth_id, "last_active_at": self.clock.now()}
        )
        return True

    async def update_user(self, user_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(UserRead, fields)
        user = self.users.get(user_id)
        if user is None:
            return False
        self.users[user_id] = user.model_copy(update=fields)
        return True

    async def set_user_organization(self, user_id: str, organization_id: str, role: str) -> bool:
        return await self.update_user(
            user_id, {"organization_id": organization_id, "primary_role": role}
        )

    async def list_organization_users(self, organization_id: str) -> list[UserRead]:
        return [u for u in self.users.values() if u.organization_id == organization_id]

    # Organizations

    async def get_organization(self, organization_id: str) -> OrganizationRead | None:
        return self.organizations.get(organization_id)

    async def get_organization_by_domain(self, domain: str) -> OrganizationRead | None:
        for organization in self.organizations.values():
            if organization.domain == domain and organization.active:
                return organization
        return None

    async def detect_organization_by_email(self, email: str) -> str | None:
        organization = await self.get_organization_by_domain(email.rsplit("@", 1)[-1])
        return organization.id if organization else None

    async def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        organization = OrganizationRead(
            id=str(uuid.uuid4()),
            name=data.name,
            domain=data.domain,
            subscription_tier=data.tier,
            settings=dict(data.settings),
            created_at=self.clock.now(),
        )
        self.organizations[organization.id] = organization
        return organization

    async def update_organization_settings(
        self, organization_id: str, settings: dict[str, Any]
    ) -> OrganizationRead | None:
        organization = self.organizations.get(organization_id)
        if organization is None:
            return None
        organization = organization.model_copy(update={"settings": dict(settings)})
        self.organizations[organization_id] = organization
        return organization

    async def set_organization_active(self, organization_id: str, active: bool) -> bool:
        organization = self.organizations.get(organization_id)
        if organization is None:
            return False
        self.organizations[organization_id] = organization.model_copy(update={"active": active})
        return True

    async def search_organizations(self, query: str, limit: int = 20) -> list[OrganizationRead]:
        query = query.lower()
        matches = [
            o
            for o in self.organizations.values()
            if query in o.name.lower() or query in (o.domain or "").lower()
        ]
        return sorted(matches, key=lambda o: o.name)[:limit]

    async def count_organization_users(self, organization_id: str) -> int:
        return len(await self.list_organization_users(organization_id))

    async def count_active_clinics(self, organization_id: str) -> int:
        return len(await self.list_active_clinics(organization_id))

    async def count_active_product_instances(self, organization_id: str) -> int:
        clinic_ids = {c.id for c in await self.list_active_clinics(organization_id)}
        return sum(1 for clinic_id, _ in self.product_instances if clinic_id in clinic_ids)

    async def list_organization_product_instances(
        self, organization_id: str
    ) -> list[ProductInstanceRead]:
        instances = [
            ProductInstanceRead(
                id=f"{clinic_id}:{product_id}",
                clinic_id=clinic_id,
                product_id=product_id,
                product=self.products[product_id],
                clinic=self.clinics[clinic_id],
            )
            for clinic_id, product_id in self.product_instances
            if self.clinics[clinic_id].organization_id == organization_id
        ]
        return sorted(instances, key=lambda i: (i.clinic.name, i.product.name))

    # Products and grants

    async def get_product_by_name(self, name: str) -> ProductRead | None:
        for product in self.products.values():
            if product.name == name:
                return product
        return None

    async def upsert_product_access(
        self,
        user_id: str,
        product_id: str,
        organization_id: str | None,
        role: str,
        entity_access: dict[str, Any] | None = None,
    ) -> str:
        existing = self.grants.get((user_id, product_id))
        grant = ProductAccessRead(
            id=existing.id if existing else str(uuid.uuid4()),
            user_id=user_id,
            product_id=product_id,
            organization_id=organization_id,
            role=role,
            entity_access=entity_access or {},
            active=True,
            product=self.products[product_id],
        )
        self.grants[(user_id, product_id)] = grant
        return grant.id

    async def update_product_access(
        self, user_id: str, product_id: str, fields: dict[str, Any]
    ) -> bool:
        _check_fields(ProductAccessRead, fields)
        grant = self.grants.get((user_id, product_id))
        if grant is None:
            return False
        self.grants[(user_id, product_id)] = grant.model_copy(update=fields)
        return True

    async def list_active_product_access(self, user_id: str) -> list[ProductAccessRead]:
        grants = [g for (uid, _), g in self.grants.items() if uid == user_id and g.active]
        resolved = []
        for grant in sorted(grants, key=lambda g: g.product.name):
            scoped = grant.entity_access.get("clinic_ids") or []
            clinic = self.clinics.get(scoped[0]) if scoped else None
            resolved.append(grant.model_copy(update={"clinic": clinic}))
        return resolved

    # Clinics

    async def get_clinic(self, clinic_id: str) -> ClinicRead | None:
        return self.clinics.get(clinic_id)

    async def list_active_clinics(self, organization_id: str) -> list[ClinicRead]:
        return sorted(
            (c for c in self.clinics.values() if c.organization_id == organization_id and c.active),
            key=lambda c: c.name,
        )

    async def find_clinic_by_name(self, organization_id: str, name: str) -> ClinicRead | None:
        for clinic in await self.list_active_clinics(organization_id):
            if clinic.name == name:
                return clinic
        return None

    async def create_clinic(self, organization_id: str, data: ClinicData) -> ClinicRead:
        clinic = ClinicRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            created_at=self.clock.now(),
            **data.model_dump(),
        )
        self.clinics[clinic.id] = clinic
        return clinic

    async def update_clinic(self, clinic_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(ClinicRead, fields)
        clinic = self.clinics.get(clinic_id)
        if clinic is None:
            return False
        self.clinics[clinic_id] = clinic.model_copy(update=fields)
        return True

    async def create_product_instance(self, clinic_id: str, product_id: str) -> None:
        self.product_instances.add((clinic_id, product_id))

    # Clients and appointments

    async def find_client_by_email(self, clinic_id: str, email: str | None) -> ClientRead | None:
        if not email:
            return None
        for client in self.clients.values():
            if client.clinic_id == clinic_id and client.email == email:
                return client
        return None

    async def create_client(self, data: ClientCreate) -> ClientRead:
        if not data.email:
            raise ValueError('null value in column "email" violates not-null constraint')
        client = ClientRead(id=str(uuid.uuid4()), created_at=self.clock.now(), **data.model_dump())
        self.clients[client.id] = client
        return client

    async def update_client(self, client_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(ClientRead, fields)
        client = self.clients.get(client_id)
        if client is None:
            return False
        self.clients[client_id] = client.model_copy(update=fields)
        return True

    async def set_ghl_contact_id(self, client_id: str, ghl_contact_id: str) -> bool:
        return await self.update_client(client_id, {"ghl_contact_id": ghl_contact_id})

    async def list_clinic_clients(self, clinic_id: str) -> list[ClientRead]:
        return sorted(
            (c for c in self.clients.values() if c.clinic_id == clinic_id),
            key=lambda c: c.created_at,
        )

    async def update_appointment(self, appointment_id: str, fields: dict[str, Any]) -> bool:
        _check_fields(AppointmentRead, fields)
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return False
        self.appointments[appointment_id] = appointment.model_copy(update=fields)
        return True


# ── Data Sync ────────────────────────────────────────────────────────────────


class InMemoryDataSyncRepository:
    """In-memory DataSyncRepository with claim and terminal-once semantics."""

    def __init__(self, products: dict[str, str] | None = None) -> None:
        self.clock = _Clock()
        self.products = products or {
            name.value: str(uuid.uuid4()) for name in ProductName
        }
        self.entries: dict[str, DataSyncEntry] = {}
        self.terminal_writes: dict[str, int] = {}

    def _name(self, product_id: str | None) -> str | None:
        for name, pid in self.products.items():
            if pid == product_id:
                return name
        return None

    async def get_product_id(self, product_name: str) -> str | None:
        return self.products.get(product_name)

    async def create_entry(
        self,
        source_product_id: str | None,
        target_product_id: str | None,
        entity_type: str,
        entity_id: str,
        sync_data: dict[str, Any],
        sync_type: SyncType = SyncType.UPDATE,
    ) -> DataSyncEntry:
        entry = DataSyncEntry(
            id=str(uuid.uuid4()),
            source_product_id=source_product_id,
            target_product_id=target_product_id,
            source_product=self._name(source_product_id),
            target_product=self._name(target_product_id),
            entity_type=entity_type,
            entity_id=entity_id,
            sync_type=sync_type,
            sync_data=dict(sync_data),
            created_at=self.clock.now(),
        )
        self.entries[entry.id] = entry
        return entry

    async def get_entry(self, sync_id: str) -> DataSyncEntry | None:
        return self.entries.get(sync_id)

    async def claim_pending(self, limit: int) -> list[DataSyncEntry]:
        pending = sorted(
            (e for e in self.entries.values() if e.status == SyncStatus.PENDING),
            key=lambda e: e.created_at,
        )[:limit]
        claimed = []
        for entry in pending:
            entry = entry.model_copy(update={"status": SyncStatus.IN_PROGRESS})
            self.entries[entry.id] = entry
            claimed.append(entry)
        return claimed

    async def release_claims(self, sync_ids) -> int:
        released = 0
        for sync_id in sync_ids:
            entry = self.entries.get(sync_id)
            if entry is not None and entry.status == SyncStatus.IN_PROGRESS:
                self.entries[sync_id] = entry.model_copy(update={"status": SyncStatus.PENDING})
                released += 1
        return released

    async def mark_processed(
        self, sync_id: str, status: SyncStatus, error_message: str | None = None
    ) -> bool:
        entry = self.entries.get(sync_id)
        if entry is None or entry.status not in (SyncStatus.PENDING, SyncStatus.IN_PROGRESS):
            return False
        self.entries[sync_id] = entry.model_copy(
            update={
                "status": status,
                "error_message": error_message,
                "processed_at": self.clock.now(),
            }
        )
        self.terminal_writes[sync_id] = self.terminal_writes.get(sync_id, 0) + 1
        return True

    async def list_for_entity(
        self, entity_type: str, entity_id: str, limit: int = 10
    ) -> list[DataSyncEntry]:
        matches = [
            e
            for e in self.entries.values()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(matches, key=lambda e: e.created_at, reverse=True)[:limit]


# ── GHL ──────────────────────────────────────────────────────────────────────


class InMemoryGHLRepository:
    """In-memory GHLRepository for testing."""

    def __init__(self) -> None:
        self.clock = _Clock()
        self.credential: GHLCredentialRead | None = None
        self.saved_tokens: list[TokenResponse] = []
        self.sub_accounts: dict[str, GHLSubAccountRead] = {}
        self.mappings: dict[str, GHLClinicMappingRead] = {}
        self.sync_logs: list[GHLSyncLogRead] = []

    async def get_credential(self) -> GHLCredentialRead | None:
        return self.credential

    async def save_credential(self, token: TokenResponse) -> GHLCredentialRead:
        self.saved_tokens.append(token)
        previous_refresh = self.credential.refresh_token if self.credential else None
        self.credential = GHLCredentialRead(
            id=self.credential.id if self.credential else str(uuid.uuid4()),
            access_token=token.access_token,
            refresh_token=token.refresh_token or previous_refresh,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=token.expires_in),
            token_type=token.token_type,
            scope=token.scope,
            location_id=token.location_id,
        )
        return self.credential

    def set_credential(self, access_token: str, expires_in: int, refresh_token: str | None = "refresh-1") -> None:
        self.credential = GHLCredentialRead(
            id=str(uuid.uuid4()),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    async def store_sub_account(self, location: dict[str, Any]) -> GHLSubAccountRead:
        existing = next(
            (s for s in self.sub_accounts.values() if s.ghl_location_id == location["id"]),
            None,
        )
        sub_account = GHLSubAccountRead(
            id=existing.id if existing else str(uuid.uuid4()),
            ghl_location_id=location["id"],
            name=location.get("name"),
            email=location.get("email"),
        )
        self.sub_accounts[sub_account.id] = sub_account
        return sub_account

    async def list_sub_accounts(self) -> list[GHLSubAccountRead]:
        return sorted(self.sub_accounts.values(), key=lambda s: s.name or "")

    async def get_sub_account(self, sub_account_id: str) -> GHLSubAccountRead | None:
        return self.sub_accounts.get(sub_account_id)

    async def create_mapping(
        self, clinic_id: str, ghl_sub_account_id: str, mapped_by: str | None = None
    ) -> GHLClinicMappingRead:
        for mapping_id, mapping in list(self.mappings.items()):
            if mapping.clinic_id == clinic_id:
                self.mappings[mapping_id] = mapping.model_copy(update={"active": False})
        mapping = GHLClinicMappingRead(
            id=str(uuid.uuid4()),
            clinic_id=clinic_id,
            ghl_sub_account_id=ghl_sub_account_id,
            active=True,
            mapped_by=mapped_by,
            created_at=self.clock.now(),
            sub_account=self.sub_accounts.get(ghl_sub_account_id),
        )
        self.mappings[mapping.id] = mapping
        return mapping

    async def get_active_mapping(self, clinic_id: str) -> GHLClinicMappingRead | None:
        for mapping in self.mappings.values():
            if mapping.clinic_id == clinic_id and mapping.active:
                return mapping
        return None

    async def list_mappings(self) -> list[GHLClinicMappingRead]:
        return sorted(self.mappings.values(), key=lambda m: m.created_at, reverse=True)

    async def log_sync(
        self,
        clinic_mapping_id: str,
        sync_type: str,
        status: str,
        sync_data: dict[str, Any],
        error_message: str | None = None,
        entity_type: str = "contact",
    ) -> GHLSyncLogRead:
        log = GHLSyncLogRead(
            id=str(uuid.uuid4()),
            clinic_mapping_id=clinic_mapping_id,
            sync_type=sync_type,
            entity_type=entity_type,
            status=status,
            sync_data=sync_data,
            error_message=error_message,
            created_at=self.clock.now(),
        )
        self.sync_logs.append(log)
        return log

    async def list_sync_logs_for_clinic(self, clinic_id: str, limit: int = 10) -> list[GHLSyncLogRead]:
        mapping_ids = {m.id for m in self.mappings.values() if m.clinic_id == clinic_id}
        logs = [log for log in self.sync_logs if log.clinic_mapping_id in mapping_ids]
        return sorted(logs, key=lambda log: log.created_at, reverse=True)[:limit]

    async def list_sync_logs(self, limit: int = 50, offset: int = 0) -> list[GHLSyncLogRead]:
        logs = sorted(self.sync_logs, key=lambda log: log.created_at, reverse=True)
        return logs[offset:offset + limit]


class InMemoryStateStore:
    """In-memory OAuthStateStore."""

    def __init__(self) -> None:
        self.states: dict[str, str] = {}

    async def save(self, session_key: str, state: str) -> None:
        self.states[session_key] = state

    async def get(self, session_key: str) -> str | None:
        return self.states.get(session_key)

    async def clear(self, session_key: str) -> None:
        self.states.pop(session_key, None)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Settings with a configured GHL app and the default pacing values."""
    return Settings(
        _env_file=None,
        GHL_CLIENT_ID="client-id",
        GHL_CLIENT_SECRET="client-secret",
        GHL_REDIRECT_URI="https://app.example.com/api/v1/ghl/oauth/callback",
        GHL_API_BASE_URL="https://ghl.test/v1",
        GHL_OAUTH_BASE_URL="https://marketplace.ghl.test",
    )


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def sync_repo() -> InMemoryDataSyncRepository:
    return InMemoryDataSyncRepository()


@pytest.fixture
def ghl_repo() -> InMemoryGHLRepository:
    return InMemoryGHLRepository()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()
