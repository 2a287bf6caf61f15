"""Unified registry -- organizations, users, clinics, products and access grants.

Provides SQLAlchemy models for the cross-product tables, Pydantic schemas
(UserContext and friends), RegistryRepository / ClientRepository for async
CRUD, the fuzzy clinic matcher, OrganizationManager, and the
CrossProductUserResolver that places new sign-ins in the registry.
"""
