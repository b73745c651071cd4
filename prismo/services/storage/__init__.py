"""
Storage Services Package

Provides abstract interfaces and the SQLAlchemy implementation for
conversations, messages and per-user AI settings.
"""

from prismo.services.storage.interface import (
    ConcurrentUpdateError,
    ConversationStorageInterface,
    NotFoundError,
    PersistenceError,
    SettingsStorageInterface,
    StorageError,
)
from prismo.services.storage.sql import (
    Database,
    SQLConversationStorage,
    SQLSettingsStorage,
)

__all__ = [
    # Interfaces
    "ConversationStorageInterface",
    "SettingsStorageInterface",
    # Exceptions
    "ConcurrentUpdateError",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
    # SQLAlchemy implementation
    "Database",
    "SQLConversationStorage",
    "SQLSettingsStorage",
]
