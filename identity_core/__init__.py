"""Identity, tenant isolation and permission resolution service."""

__version__ = "0.3.0"
