"""Tests for OrganizationManager."""

from __future__ import annotations

import pytest

from src.vetsync.core.exceptions import EntityNotFoundError
from src.vetsync.registry.organizations import OrganizationManager
from src.vetsync.registry.schemas import ClinicData, OrganizationCreate, UserCreate, UserRole


async def test_create_and_lookup_by_domain(registry):
    manager = OrganizationManager(registry)

    organization = await manager.create_organization(
        OrganizationCreate(name="Happy Paws", domain="happypaws.com", tier="premium")
    )

    assert organization.subscription_tier == "premium"
    found = await manager.get_by_domain("happypaws.com")
    assert found.id == organization.id
    assert await manager.get_by_domain("other.com") is None


async def test_add_user_to_organization(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(OrganizationCreate(name="Happy Paws"))
    user = await registry.create_user(UserCreate(email="bob@happypaws.com"))

    await manager.add_user_to_organization(user.id, organization.id, UserRole.CLINIC_ADMIN)

    [member] = await manager.get_organization_users(organization.id)
    assert member.id == user.id
    assert member.primary_role == "clinic_admin"


async def test_add_unknown_user_raises(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(OrganizationCreate(name="Happy Paws"))

    with pytest.raises(EntityNotFoundError):
        await manager.add_user_to_organization("nope", organization.id)


async def test_update_settings(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(
        OrganizationCreate(name="Happy Paws", settings={"timezone": "UTC"})
    )

    updated = await manager.update_settings(organization.id, {"timezone": "America/Denver"})

    assert updated.settings == {"timezone": "America/Denver"}
    with pytest.raises(EntityNotFoundError):
        await manager.update_settings("nope", {})


async def test_analytics_counts_active_clinics_and_instances(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(OrganizationCreate(name="Happy Paws"))
    for email in ("a@happypaws.com", "b@happypaws.com"):
        user = await registry.create_user(UserCreate(email=email))
        await manager.add_user_to_organization(user.id, organization.id)
    active = await registry.create_clinic(organization.id, ClinicData(name="Main"))
    closed = await registry.create_clinic(organization.id, ClinicData(name="Old"))
    await registry.update_clinic(closed.id, {"active": False})
    product = await registry.get_product_by_name("Client Portal")
    await registry.create_product_instance(active.id, product.id)
    await registry.create_product_instance(closed.id, product.id)

    analytics = await manager.get_analytics(organization.id)

    assert analytics.total_users == 2
    assert analytics.total_clinics == 1
    assert analytics.active_products == 1
    assert analytics.last_updated is not None


async def test_search_matches_name_or_domain(registry):
    manager = OrganizationManager(registry)
    await manager.create_organization(OrganizationCreate(name="Happy Paws", domain="hp.com"))
    await manager.create_organization(OrganizationCreate(name="Cat Care", domain="happycats.com"))
    await manager.create_organization(OrganizationCreate(name="Dog Days"))

    results = await manager.search_organizations("happy")

    assert [o.name for o in results] == ["Cat Care", "Happy Paws"]


async def test_deactivate_hides_organization_from_domain_lookup(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(
        OrganizationCreate(name="Happy Paws", domain="happypaws.com")
    )

    await manager.deactivate_organization(organization.id)

    assert organization.id in registry.organizations
    assert await manager.get_by_domain("happypaws.com") is None
    with pytest.raises(EntityNotFoundError):
        await manager.deactivate_organization("nope")


async def test_organization_products_join_product_and_clinic(registry):
    manager = OrganizationManager(registry)
    organization = await manager.create_organization(OrganizationCreate(name="Happy Paws"))
    other = await manager.create_organization(OrganizationCreate(name="Cat Care"))
    main = await registry.create_clinic(organization.id, ClinicData(name="Main"))
    annex = await registry.create_clinic(organization.id, ClinicData(name="Annex"))
    elsewhere = await registry.create_clinic(other.id, ClinicData(name="Elsewhere"))
    portal = await registry.get_product_by_name("Client Portal")
    rooms = await registry.get_product_by_name("Room Management System")
    await registry.create_product_instance(main.id, portal.id)
    await registry.create_product_instance(main.id, rooms.id)
    await registry.create_product_instance(annex.id, rooms.id)
    await registry.create_product_instance(elsewhere.id, portal.id)

    products = await manager.get_organization_products(organization.id)

    assert [(p.clinic.name, p.product.name) for p in products] == [
        ("Annex", "Room Management System"),
        ("Main", "Client Portal"),
        ("Main", "Room Management System"),
    ]
    assert all(p.clinic_id == p.clinic.id and p.product_id == p.product.id for p in products)
    [only] = await manager.get_organization_products(other.id)
    assert only.clinic.name == "Elsewhere"
