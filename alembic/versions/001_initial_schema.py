"""Initial schema: unified registry, data sync log and GHL integration.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

Creates:
- organizations, unified_clinics, unified_users, products,
  user_product_access, clinic_product_instances, clients, appointments
- data_sync_log
- ghl_credentials, ghl_sub_accounts, ghl_clinic_mappings, ghl_sync_log

Seeds the product catalog. No foreign key constraints (application-level
referential integrity via the repositories).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PRODUCTS = (
    "Room Management System",
    "Appointment Scheduling",
    "Client Portal",
    "Inventory Management",
)


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def _active() -> sa.Column:
    return sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False)


def _jsonb(name: str) -> sa.Column:
    return sa.Column(name, JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False)


def upgrade() -> None:
    # ── Unified registry ────────────────────────────────────────────────

    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("domain", sa.String(255), nullable=True),
        sa.Column(
            "subscription_tier",
            sa.String(50),
            server_default=sa.text("'basic'"),
            nullable=False,
        ),
        _jsonb("settings"),
        _active(),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_organizations_domain", "organizations", ["domain"])

    op.create_table(
        "unified_clinics",
        _id(),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        _active(),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_unified_clinics_organization_id", "unified_clinics", ["organization_id"]
    )

    op.create_table(
        "unified_users",
        _id(),
        sa.Column("auth_id", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "primary_role",
            sa.String(50),
            server_default=sa.text("'clinic_user'"),
            nullable=False,
        ),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_unified_users_auth_id", "unified_users", ["auth_id"])
    op.create_index(
        "ix_unified_users_organization_id", "unified_users", ["organization_id"]
    )

    op.create_table(
        "products",
        _id(),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("version", sa.String(50), nullable=True),
        _jsonb("endpoints"),
        _created_at(),
    )

    op.create_table(
        "user_product_access",
        _id(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        _jsonb("entity_access"),
        _active(),
        _created_at(),
        sa.UniqueConstraint(
            "user_id", "product_id", name="uq_user_product_access_user_product"
        ),
    )

    op.create_table(
        "clinic_product_instances",
        _id(),
        sa.Column("clinic_id", UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), nullable=False),
        _active(),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "product_id", name="uq_clinic_product_instance"),
    )

    op.create_table(
        "clients",
        _id(),
        sa.Column("clinic_id", UUID(as_uuid=True), nullable=False),
        sa.Column("first_name", sa.String(100), server_default=sa.text("''"), nullable=False),
        sa.Column("last_name", sa.String(100), server_default=sa.text("''"), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("ghl_contact_id", sa.String(100), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("clinic_id", "email", name="uq_client_clinic_email"),
    )
    op.create_index("ix_clients_clinic_id", "clients", ["clinic_id"])

    op.create_table(
        "appointments",
        _id(),
        sa.Column("clinic_id", UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", UUID(as_uuid=True), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status", sa.String(50), server_default=sa.text("'scheduled'"), nullable=False
        ),
        sa.Column("room", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_appointments_clinic_id", "appointments", ["clinic_id"])

    # ── Data sync log ───────────────────────────────────────────────────

    op.create_table(
        "data_sync_log",
        _id(),
        sa.Column("source_product_id", UUID(as_uuid=True), nullable=True),
        sa.Column("target_product_id", UUID(as_uuid=True), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column(
            "sync_type", sa.String(20), server_default=sa.text("'update'"), nullable=False
        ),
        _jsonb("sync_data"),
        sa.Column(
            "status", sa.String(20), server_default=sa.text("'pending'"), nullable=False
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_data_sync_log_status_created", "data_sync_log", ["status", "created_at"]
    )
    op.create_index(
        "ix_data_sync_log_entity", "data_sync_log", ["entity_type", "entity_id"]
    )

    # ── GoHighLevel ─────────────────────────────────────────────────────

    op.create_table(
        "ghl_credentials",
        _id(),
        sa.Column(
            "provider",
            sa.String(50),
            server_default=sa.text("'ghl'"),
            nullable=False,
            unique=True,
        ),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("token_type", sa.String(50), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("location_id", sa.String(100), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("company_id", sa.String(100), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "ghl_sub_accounts",
        _id(),
        sa.Column("ghl_location_id", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(300), nullable=True),
        sa.Column("business_name", sa.String(300), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("timezone", sa.String(100), nullable=True),
        _active(),
        sa.Column("last_synced", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "ghl_clinic_mappings",
        _id(),
        sa.Column("clinic_id", UUID(as_uuid=True), nullable=False),
        sa.Column("ghl_sub_account_id", UUID(as_uuid=True), nullable=False),
        _active(),
        sa.Column("mapped_by", sa.String(255), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "clinic_id",
            "ghl_sub_account_id",
            name="uq_ghl_clinic_mapping_clinic_sub_account",
        ),
    )
    op.create_index(
        "uq_ghl_clinic_mapping_active_clinic",
        "ghl_clinic_mappings",
        ["clinic_id"],
        unique=True,
        postgresql_where=sa.text("active"),
    )

    op.create_table(
        "ghl_sync_log",
        _id(),
        sa.Column("clinic_mapping_id", UUID(as_uuid=True), nullable=False),
        sa.Column("sync_type", sa.String(50), nullable=False),
        sa.Column(
            "entity_type", sa.String(50), server_default=sa.text("'contact'"), nullable=False
        ),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column(
            "status", sa.String(20), server_default=sa.text("'pending'"), nullable=False
        ),
        _jsonb("sync_data"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_ghl_sync_log_clinic_mapping_id", "ghl_sync_log", ["clinic_mapping_id"]
    )

    # ── Product catalog ─────────────────────────────────────────────────

    products = sa.table("products", sa.column("name", sa.String))
    op.bulk_insert(products, [{"name": name} for name in PRODUCTS])


def downgrade() -> None:
    for table in (
        "ghl_sync_log",
        "ghl_clinic_mappings",
        "ghl_sub_accounts",
        "ghl_credentials",
        "data_sync_log",
        "appointments",
        "clients",
        "clinic_product_instances",
        "user_product_access",
        "products",
        "unified_clinics",
        "unified_users",
        "organizations",
    ):
        op.drop_table(table)
