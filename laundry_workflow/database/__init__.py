"""
Database package initialization.

The package follows a modular structure:
- base: Declarative base and shared column mixins
- connection: Async engine, tenant-scoped transactions and health checks
- models: SQLAlchemy ORM models for orders, pieces, history and settings
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []
