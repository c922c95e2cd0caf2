"""Tenancy module -- tenants, users, and per-request identity resolution.

Provides SQLAlchemy models (Tenant, User), Pydantic read schemas, the
TenantRepository, TenantResolver (auto-provisioning by external company id),
UserProvisioner, and RequestContextBuilder which turns an inbound request's
identity into an IdentityContext.
"""
