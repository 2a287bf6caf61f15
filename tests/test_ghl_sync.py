"""Tests for GHLSyncEngine: mapping guard, import, export and run logging."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.vetsync.core.exceptions import MappingNotFoundError
from src.vetsync.ghl.schemas import SyncDirection
from src.vetsync.ghl.sync import GHLSyncEngine
from src.vetsync.registry.schemas import ClientCreate

CLINIC_ID = "clinic-1"
LOCATION_ID = "loc-1"


class FakeGHLClient:
    """Serves contacts from a list and records every outbound call."""

    def __init__(self, contacts: list[dict[str, Any]] | None = None) -> None:
        self.contacts = contacts or []
        self.page_calls: list[tuple[str, int, str | None]] = []
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.updated: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_on_page: int | None = None
        self.create_response: dict[str, Any] | None = None

    @property
    def calls(self) -> int:
        return len(self.page_calls) + len(self.created) + len(self.updated)

    async def get_location_contacts(
        self, location_id: str, limit: int = 100, start_after: str | None = None
    ) -> list[dict[str, Any]]:
        self.page_calls.append((location_id, limit, start_after))
        if self.fail_on_page is not None and len(self.page_calls) - 1 == self.fail_on_page:
            raise RuntimeError("GHL API error: 502 Bad Gateway")
        start = 0
        if start_after:
            ids = [c["id"] for c in self.contacts]
            start = ids.index(start_after) + 1
        return self.contacts[start:start + limit]

    async def create_contact(self, location_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        self.created.append((location_id, contact))
        if self.create_response is not None:
            return self.create_response
        return {"id": f"ghl-new-{len(self.created)}"}

    async def update_contact(
        self, location_id: str, contact_id: str, contact: dict[str, Any]
    ) -> dict[str, Any]:
        self.updated.append((location_id, contact_id, contact))
        return {"id": contact_id}


def contact(n: int, email: str | None = "") -> dict[str, Any]:
    return {
        "id": f"ghl-{n}",
        "firstName": f"First{n}",
        "lastName": f"Last{n}",
        "email": f"contact{n}@example.com" if email == "" else email,
        "phone": f"555-010{n}",
        "address1": f"{n} Main St",
        "city": "Springfield",
    }


async def map_clinic(ghl_repo) -> None:
    sub_account = await ghl_repo.store_sub_account({"id": LOCATION_ID, "name": "Downtown"})
    await ghl_repo.create_mapping(CLINIC_ID, sub_account.id, mapped_by="admin@example.com")


def make_engine(fake, ghl_repo, registry, settings) -> tuple[GHLSyncEngine, AsyncMock]:
    sleep = AsyncMock()
    engine = GHLSyncEngine(fake, ghl_repo, registry, settings=settings, sleep=sleep)
    return engine, sleep


def sleeps(sleep: AsyncMock) -> list[float]:
    return [c.args[0] for c in sleep.await_args_list]


# ── Orchestration ────────────────────────────────────────────────────────────


async def test_both_directions_imports_then_exports_local_clients(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    await registry.create_client(ClientCreate(clinic_id=CLINIC_ID, email="local1@example.com"))
    await registry.create_client(ClientCreate(clinic_id=CLINIC_ID, email="local2@example.com"))
    fake = FakeGHLClient([contact(1), contact(2), contact(3)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.BOTH)

    assert result.imported == 3
    assert result.exported == 2
    assert result.updated == 0
    assert result.errors == []
    assert [c["email"] for _, c in fake.created] == ["local1@example.com", "local2@example.com"]
    assert fake.updated == []

    [log] = ghl_repo.sync_logs
    assert log.sync_type == "contact_sync"
    assert log.status == "success"
    assert log.sync_data["direction"] == "both"
    assert log.sync_data["results"] == {
        "imported": 3,
        "exported": 2,
        "updated": 0,
        "errors": [],
    }


async def test_unmapped_clinic_fails_before_any_remote_call(ghl_repo, registry, settings):
    fake = FakeGHLClient([contact(1)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    with pytest.raises(MappingNotFoundError, match="No GHL mapping found for this clinic"):
        await engine.sync_clinic_contacts(CLINIC_ID)

    assert fake.calls == 0
    assert ghl_repo.sync_logs == []


async def test_inactive_mapping_does_not_authorize_sync(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    for mapping_id, mapping in list(ghl_repo.mappings.items()):
        ghl_repo.mappings[mapping_id] = mapping.model_copy(update={"active": False})
    fake = FakeGHLClient([contact(1)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    with pytest.raises(MappingNotFoundError):
        await engine.trigger_manual_sync(CLINIC_ID)
    assert fake.calls == 0


async def test_export_only_skips_import(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    await registry.create_client(ClientCreate(clinic_id=CLINIC_ID, email="local1@example.com"))
    fake = FakeGHLClient([contact(1)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, "export")

    assert fake.page_calls == []
    assert result.imported == 0
    assert result.exported == 1
    assert ghl_repo.sync_logs[0].sync_data["direction"] == "export"


async def test_get_sync_status_lists_newest_first(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    engine, _ = make_engine(FakeGHLClient(), ghl_repo, registry, settings)

    await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)
    await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.EXPORT)

    logs = await engine.get_sync_status(CLINIC_ID)
    assert [log.sync_data["direction"] for log in logs] == ["export", "import"]


# ── Import ───────────────────────────────────────────────────────────────────


async def test_failed_contact_does_not_stop_the_page(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    contacts = [contact(n) for n in range(1, 11)]
    contacts[4] = contact(5, email=None)
    fake = FakeGHLClient(contacts)
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    assert result.imported == 9
    assert len(result.errors) == 1
    assert result.errors[0].stage == "import"
    assert "email" in result.errors[0].error
    stored = {c.ghl_contact_id for c in registry.clients.values()}
    assert {f"ghl-{n}" for n in range(6, 11)} <= stored
    assert "ghl-5" not in stored


async def test_import_updates_existing_client_by_email(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    existing = await registry.create_client(
        ClientCreate(
            clinic_id=CLINIC_ID,
            first_name="Old",
            email="contact1@example.com",
            notes="Prefers morning visits",
        )
    )
    fake = FakeGHLClient([contact(1)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.import_contacts_from_ghl(await ghl_repo.get_active_mapping(CLINIC_ID))

    assert result.imported == 1
    assert len(registry.clients) == 1
    client = registry.clients[existing.id]
    assert client.first_name == "First1"
    assert client.ghl_contact_id == "ghl-1"
    assert client.address == "1 Main St, Springfield"
    assert client.notes == "Prefers morning visits"


async def test_import_new_client_records_provenance(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    engine, _ = make_engine(FakeGHLClient([contact(1)]), ghl_repo, registry, settings)

    await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    [client] = registry.clients.values()
    assert client.clinic_id == CLINIC_ID
    assert client.notes.startswith("Imported from GoHighLevel on ")


async def test_import_pages_by_last_contact_id(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    settings = settings.model_copy(update={"SYNC_BATCH_SIZE": 2})
    fake = FakeGHLClient([contact(n) for n in range(1, 6)])
    engine, sleep = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    assert result.imported == 5
    assert fake.page_calls == [
        (LOCATION_ID, 2, None),
        (LOCATION_ID, 2, "ghl-2"),
        (LOCATION_ID, 2, "ghl-4"),
    ]
    assert sleeps(sleep) == [1.0, 1.0]


async def test_full_last_page_triggers_one_empty_fetch(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    settings = settings.model_copy(update={"SYNC_BATCH_SIZE": 2})
    fake = FakeGHLClient([contact(1), contact(2)])
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    assert result.imported == 2
    assert len(fake.page_calls) == 2


async def test_page_failure_ends_import_and_keeps_earlier_pages(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    settings = settings.model_copy(update={"SYNC_BATCH_SIZE": 2})
    fake = FakeGHLClient([contact(n) for n in range(1, 6)])
    fake.fail_on_page = 1
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    assert result.imported == 2
    [error] = result.errors
    assert error.stage == "page"
    assert error.identifier == "ghl-2"
    assert ghl_repo.sync_logs[0].status == "success"


async def test_full_page_ending_without_contact_id_stops_paging(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    settings = settings.model_copy(update={"SYNC_BATCH_SIZE": 2})
    anonymous = {k: v for k, v in contact(2).items() if k != "id"}
    fake = FakeGHLClient([contact(1), anonymous, contact(3)])
    engine, sleep = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.IMPORT)

    assert result.imported == 2
    assert fake.page_calls == [(LOCATION_ID, 2, None)]
    [error] = result.errors
    assert error.stage == "page"
    assert error.identifier is None
    assert sleeps(sleep) == []


# ── Export ───────────────────────────────────────────────────────────────────


async def test_export_updates_linked_clients_and_links_new_ones(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    linked = await registry.create_client(
        ClientCreate(clinic_id=CLINIC_ID, email="linked@example.com", ghl_contact_id="ghl-9")
    )
    fresh = await registry.create_client(
        ClientCreate(clinic_id=CLINIC_ID, first_name="Fresh", email="fresh@example.com")
    )
    fake = FakeGHLClient()
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.EXPORT)

    assert result.updated == 1
    assert result.exported == 1
    [(location_id, contact_id, payload)] = fake.updated
    assert (location_id, contact_id) == (LOCATION_ID, "ghl-9")
    assert payload["customFields"]["smart_paws_id"] == linked.id
    [(_, created)] = fake.created
    assert created["firstName"] == "Fresh"
    assert created["tags"] == ["veterinary-client", "smart-paws-sync"]
    assert registry.clients[fresh.id].ghl_contact_id == "ghl-new-1"


async def test_export_records_error_when_no_contact_id_returned(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    client = await registry.create_client(
        ClientCreate(clinic_id=CLINIC_ID, email="fresh@example.com")
    )
    fake = FakeGHLClient()
    fake.create_response = {}
    engine, _ = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.EXPORT)

    assert result.exported == 0
    [error] = result.errors
    assert error.stage == "export"
    assert error.identifier == "fresh@example.com"
    assert registry.clients[client.id].ghl_contact_id is None


async def test_export_pauses_between_batches(ghl_repo, registry, settings):
    await map_clinic(ghl_repo)
    settings = settings.model_copy(update={"SYNC_BATCH_SIZE": 2})
    for n in range(5):
        await registry.create_client(
            ClientCreate(clinic_id=CLINIC_ID, email=f"local{n}@example.com")
        )
    fake = FakeGHLClient()
    engine, sleep = make_engine(fake, ghl_repo, registry, settings)

    result = await engine.sync_clinic_contacts(CLINIC_ID, SyncDirection.EXPORT)

    assert result.exported == 5
    assert sleeps(sleep) == [2.0, 2.0]
