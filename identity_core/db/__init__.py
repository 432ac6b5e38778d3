"""
identity_core.db - engine factory and tenant database plumbing.

Provides:
  - pool: create_engine_with_pool, shared by the control plane and tenants
  - tenant_schema: table layout of an isolated tenant database
  - tenant_connections: TenantConnectionFactory (create, connect, dispose)
"""
