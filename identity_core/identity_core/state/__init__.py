"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from identity_core.state.database import get_engine, get_session
from identity_core.state.repository import AccountRepository, InvoiceRepository
from identity_core.state.sensitive_fields import SensitiveField, SensitiveFieldRepository

__all__ = [
    "AccountRepository",
    "InvoiceRepository",
    "SensitiveField",
    "SensitiveFieldRepository",
    "get_engine",
    "get_session",
]
