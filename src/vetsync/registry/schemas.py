"""Pydantic schemas for the unified registry -- organizations, clinics, users, access.

Defines:
- Enums: UserRole, ProductName
- Organizations: OrganizationCreate/Read, OrganizationAnalytics
- Clinics: ClinicData, ClinicRead
- Users: UserCreate, UserRead, UserContext
- Products and grants: ProductRead, ProductAccessRead, ProductInstanceRead
- Clients and appointments: ClientCreate, ClientRead, AppointmentRead
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class UserRole(str, Enum):
    """Roles used for primary_role and product access grants."""

    AGENCY_ADMIN = "agency_admin"
    ORGANIZATION_ADMIN = "organization_admin"
    CLINIC_ADMIN = "clinic_admin"
    CLINIC_USER = "clinic_user"


class ProductName(str, Enum):
    """Catalog names of the products in the suite."""

    ROOM_MANAGEMENT = "Room Management System"
    APPOINTMENT_SCHEDULING = "Appointment Scheduling"
    CLIENT_PORTAL = "Client Portal"
    INVENTORY_MANAGEMENT = "Inventory Management"


# ── Organizations ───────────────────────────────────────────────────────────


class OrganizationCreate(BaseModel):
    """Schema for creating an organization."""

    name: str
    domain: str | None = None
    tier: str = "basic"
    settings: dict[str, Any] = Field(default_factory=dict)


class OrganizationRead(BaseModel):
    """Schema for reading an organization."""

    id: str
    name: str
    domain: str | None = None
    subscription_tier: str = "basic"
    settings: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrganizationAnalytics(BaseModel):
    """Headline counts for an organization's admin dashboard."""

    total_users: int = 0
    total_clinics: int = 0
    active_products: int = 0
    last_updated: datetime


# ── Clinics ─────────────────────────────────────────────────────────────────


class ClinicData(BaseModel):
    """Incoming clinic details used by find-or-create."""

    name: str
    address: str | None = None
    phone: str | None = None
    email: str | None = None


class ClinicRead(BaseModel):
    """Schema for reading a unified clinic."""

    id: str
    organization_id: str
    name: str
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Users ───────────────────────────────────────────────────────────────────


class UserCreate(BaseModel):
    """Schema for creating a unified user."""

    email: str
    auth_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    organization_id: str | None = None
    primary_role: UserRole = UserRole.CLINIC_USER


class UserRead(BaseModel):
    """Schema for reading a unified user, optionally with its organization."""

    id: str
    email: str
    auth_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    organization_id: str | None = None
    primary_role: str = UserRole.CLINIC_USER.value
    last_active_at: datetime | None = None
    organization: OrganizationRead | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Products and Access ─────────────────────────────────────────────────────


class ProductRead(BaseModel):
    """Schema for reading a product catalog entry."""

    id: str
    name: str
    version: str | None = None
    endpoints: dict[str, Any] = Field(default_factory=dict)


class ProductAccessRead(BaseModel):
    """Active product grant joined with its product and (optional) clinic."""

    id: str
    user_id: str
    product_id: str
    organization_id: str | None = None
    role: str
    entity_access: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    product: ProductRead
    clinic: ClinicRead | None = None


class ProductInstanceRead(BaseModel):
    """Product enabled for a clinic, joined with the product and the clinic."""

    id: str
    clinic_id: str
    product_id: str
    active: bool = True
    created_at: datetime | None = None
    product: ProductRead
    clinic: ClinicRead


class UserContext(BaseModel):
    """Everything a dashboard needs about the signed-in user.

    The ``has_*_access`` flags are auto-computed from ``product_access`` so
    a flag is True if and only if an active grant for that product is
    present in the list.
    """

    user: UserRead
    product_access: list[ProductAccessRead] = Field(default_factory=list)
    clinics: list[ClinicRead] = Field(default_factory=list)
    has_room_access: bool = False
    has_appointment_access: bool = False
    has_portal_access: bool = False
    has_inventory_access: bool = False

    @model_validator(mode="after")
    def _compute_access_flags(self) -> UserContext:
        """Derive access flags from the active grants."""
        granted = {p.product.name for p in self.product_access if p.active}
        self.has_room_access = ProductName.ROOM_MANAGEMENT.value in granted
        self.has_appointment_access = ProductName.APPOINTMENT_SCHEDULING.value in granted
        self.has_portal_access = ProductName.CLIENT_PORTAL.value in granted
        self.has_inventory_access = ProductName.INVENTORY_MANAGEMENT.value in granted
        return self


# ── Clients and Appointments ────────────────────────────────────────────────


class ClientCreate(BaseModel):
    """Schema for inserting or updating a clinic client."""

    clinic_id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    notes: str | None = None
    ghl_contact_id: str | None = None


class ClientRead(BaseModel):
    """Schema for reading a clinic client."""

    id: str
    clinic_id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    notes: str | None = None
    ghl_contact_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AppointmentRead(BaseModel):
    """Schema for reading an appointment."""

    id: str
    clinic_id: str
    client_id: str | None = None
    scheduled_at: datetime | None = None
    status: str = "scheduled"
    room: str | None = None
    notes: str | None = None
