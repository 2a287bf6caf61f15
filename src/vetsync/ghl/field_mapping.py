"""Field mapping between local client rows and GHL contact payloads.

GHL contacts use camelCase keys and split addresses (address1, city,
state, postalCode); local clients keep one formatted address string.
Outbound payloads carry the local client id in ``customFields`` so a
contact can always be traced back to its client.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.vetsync.registry.schemas import ClientRead

CONTACT_SOURCE = "Smart Paws Vet Management"
CONTACT_TAGS = ["veterinary-client", "smart-paws-sync"]

ADDRESS_PARTS = ("address1", "city", "state", "postalCode")


def format_address(contact: dict[str, Any]) -> str:
    """Join the non-empty address parts of a GHL contact with ", "."""
    return ", ".join(str(contact[part]) for part in ADDRESS_PARTS if contact.get(part))


def contact_to_client_fields(
    contact: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    """Map a GHL contact to client columns for insert.

    ``notes`` records provenance and import time; callers updating an
    existing client drop it.
    """
    now = now or datetime.now(timezone.utc)
    return {
        "first_name": contact.get("firstName") or "",
        "last_name": contact.get("lastName") or "",
        "email": contact.get("email"),
        "phone": contact.get("phone"),
        "address": format_address(contact),
        "ghl_contact_id": contact.get("id"),
        "notes": f"Imported from GoHighLevel on {now.isoformat()}",
    }


def client_to_new_contact(client: ClientRead, now: datetime | None = None) -> dict[str, Any]:
    """Payload for creating a GHL contact from a local client."""
    now = now or datetime.now(timezone.utc)
    return {
        "firstName": client.first_name,
        "lastName": client.last_name,
        "email": client.email,
        "phone": client.phone,
        "address1": client.address,
        "source": CONTACT_SOURCE,
        "tags": list(CONTACT_TAGS),
        "customFields": {
            "smart_paws_id": client.id,
            "sync_date": now.isoformat(),
        },
    }


def client_to_contact_update(client: ClientRead, now: datetime | None = None) -> dict[str, Any]:
    """Payload for updating the GHL contact already linked to a client."""
    now = now or datetime.now(timezone.utc)
    return {
        "firstName": client.first_name,
        "lastName": client.last_name,
        "email": client.email,
        "phone": client.phone,
        "address1": client.address,
        "customFields": {
            "smart_paws_id": client.id,
            "last_sync_date": now.isoformat(),
        },
    }
