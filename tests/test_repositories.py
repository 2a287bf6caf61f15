"""Tests for repository statement builders and helpers.

SQL is compiled against the PostgreSQL dialect and inspected as text, so
no database is needed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql

from src.vetsync.core.exceptions import EntityNotFoundError
from src.vetsync.datasync.repository import DataSyncRepository
from src.vetsync.datasync.schemas import SyncStatus
from src.vetsync.ghl.repository import (
    GHLRepository,
    credential_upsert,
    sub_account_upsert,
    sub_account_values,
)
from src.vetsync.ghl.schemas import TokenResponse
from src.vetsync.registry.models import ClientModel
from src.vetsync.registry.repository import (
    _prepare_partial_update,
    email_domain,
    normalize_email,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class FakeResult:
    def __init__(self, rows: list) -> None:
        self._rows = rows

    def scalars(self) -> FakeResult:
        return self

    def all(self) -> list:
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None


class FakeSession:
    """Records executed statements and returns canned rows."""

    def __init__(self, rows: list | None = None) -> None:
        self.rows = rows or []
        self.statements: list = []
        self.commits = 0

    async def execute(self, stmt) -> FakeResult:
        self.statements.append(stmt)
        return FakeResult(self.rows)

    async def commit(self) -> None:
        self.commits += 1


def factory_for(session: FakeSession):
    async def session_factory():
        yield session

    return session_factory


# ── Registry Helpers ─────────────────────────────────────────────────────────


def test_normalize_email_and_domain():
    assert normalize_email("  Jane@Vet.COM ") == "jane@vet.com"
    assert email_domain("Jane@Vet.COM") == "vet.com"


def test_partial_update_rejects_unknown_columns():
    with pytest.raises(ValueError, match="Unknown clients fields: nickname"):
        _prepare_partial_update(ClientModel, {"phone": "555", "nickname": "JD"})


def test_partial_update_rejects_primary_key():
    with pytest.raises(ValueError, match="id"):
        _prepare_partial_update(ClientModel, {"id": str(uuid.uuid4())})


def test_partial_update_coerces_uuids_and_stamps_updated_at():
    clinic_id = uuid.uuid4()

    values = _prepare_partial_update(ClientModel, {"clinic_id": str(clinic_id), "phone": "555"})

    assert values["clinic_id"] == clinic_id
    assert values["phone"] == "555"
    assert isinstance(values["updated_at"], datetime)


# ── GHL Statements ───────────────────────────────────────────────────────────


def test_credential_upsert_keeps_refresh_token_when_absent():
    stmt = credential_upsert(TokenResponse(access_token="a", expires_in=60), now=NOW)

    text = sql(stmt)

    assert "INSERT INTO ghl_credentials" in text
    assert "ON CONFLICT (provider) DO UPDATE" in text
    assert "coalesce(excluded.refresh_token, ghl_credentials.refresh_token)" in text
    assert "RETURNING" in text


def test_sub_account_values_map_location_fields():
    values = sub_account_values(
        {
            "id": "loc-1",
            "name": "Downtown",
            "businessName": "Downtown Vet LLC",
            "postalCode": "80202",
        },
        now=NOW,
    )

    assert values["ghl_location_id"] == "loc-1"
    assert values["business_name"] == "Downtown Vet LLC"
    assert values["postal_code"] == "80202"
    assert values["city"] is None
    assert values["active"] is True
    assert values["last_synced"] == NOW


def test_sub_account_upsert_conflicts_on_location_id():
    text = sql(sub_account_upsert({"id": "loc-1", "name": "Downtown"}, now=NOW))

    assert "ON CONFLICT (ghl_location_id) DO UPDATE" in text
    assert "name = excluded.name" in text
    assert "ghl_location_id = excluded.ghl_location_id" not in text


async def test_malformed_clinic_id_has_no_mapping_or_history():
    session = FakeSession()
    repo = GHLRepository(factory_for(session))

    assert await repo.get_active_mapping("clinic-1") is None
    assert await repo.list_sync_logs_for_clinic("clinic-1") == []
    assert await repo.get_sub_account("nope") is None
    assert session.statements == []


async def test_create_mapping_rejects_malformed_ids():
    session = FakeSession()
    repo = GHLRepository(factory_for(session))

    with pytest.raises(EntityNotFoundError, match="Clinic not found: clinic-1"):
        await repo.create_mapping("clinic-1", str(uuid.uuid4()))
    with pytest.raises(EntityNotFoundError, match="GHL sub-account not found: nope"):
        await repo.create_mapping(str(uuid.uuid4()), "nope")
    assert session.statements == []


# ── Data Sync Claims ─────────────────────────────────────────────────────────


async def test_claim_pending_skips_locked_rows():
    session = FakeSession()
    repo = DataSyncRepository(factory_for(session))

    assert await repo.claim_pending(5) == []

    [stmt] = session.statements
    text = sql(stmt)
    assert text.startswith("UPDATE data_sync_log SET status=")
    assert "FOR UPDATE SKIP LOCKED" in text
    assert "ORDER BY data_sync_log.created_at" in text
    assert session.commits == 1


async def test_mark_processed_only_transitions_open_rows():
    session = FakeSession()
    repo = DataSyncRepository(factory_for(session))

    updated = await repo.mark_processed(str(uuid.uuid4()), SyncStatus.SUCCESS)

    assert updated is False
    text = sql(session.statements[0])
    assert "data_sync_log.status IN" in text


async def test_malformed_sync_id_is_not_found():
    session = FakeSession()
    repo = DataSyncRepository(factory_for(session))

    assert await repo.mark_processed("not-a-uuid", SyncStatus.FAILED) is False
    assert await repo.get_entry("not-a-uuid") is None
    assert session.statements == []


async def test_release_claims_returns_only_in_progress_rows_to_pending():
    session = FakeSession(rows=[uuid.uuid4()])
    repo = DataSyncRepository(factory_for(session))

    released = await repo.release_claims([str(uuid.uuid4()), "not-a-uuid"])

    assert released == 1
    text = sql(session.statements[0])
    assert text.startswith("UPDATE data_sync_log SET status=")
    assert "data_sync_log.status = " in text
    assert session.commits == 1


async def test_release_claims_with_no_valid_ids_skips_database():
    session = FakeSession()
    repo = DataSyncRepository(factory_for(session))

    assert await repo.release_claims(["not-a-uuid"]) == 0
    assert session.statements == []
