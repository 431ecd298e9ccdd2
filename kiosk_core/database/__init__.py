"""Database package for durable kiosk state."""
from .connection import Database
from .models import Base, CredentialEntry, IdempotencyRecord

__all__ = [
    "Base",
    "CredentialEntry",
    "Database",
    "IdempotencyRecord",
]
