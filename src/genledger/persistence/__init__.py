"""
Persistence Layer

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, UnitOfWork, get_database
from .models import (
    AccountRecord,
    TransactionRecord,
    GenerationRecord,
    TransactionKind,
    GenerationStatus,
    GenerationType,
)
from .repository import TransactionRepository, GenerationRepository

__all__ = [
    "Database",
    "UnitOfWork",
    "get_database",
    "AccountRecord",
    "TransactionRecord",
    "GenerationRecord",
    "TransactionKind",
    "GenerationStatus",
    "GenerationType",
    "TransactionRepository",
    "GenerationRepository",
]
