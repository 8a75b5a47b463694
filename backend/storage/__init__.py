# storage/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT — STORAGE MODULE
# ============================================================================
# Order store, audit log and user directory interfaces with their in-memory
# implementations. PostgreSQL adapters live in database.py.
# ============================================================================

from storage.repository import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    IOrderRepository,
    IUserDirectory,
    InMemoryAuditLog,
    InMemoryOrderRepository,
    InMemoryUserDirectory,
)

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "IOrderRepository",
    "IUserDirectory",
    "InMemoryAuditLog",
    "InMemoryOrderRepository",
    "InMemoryUserDirectory",
]
