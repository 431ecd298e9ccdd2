"""Credential storage package."""
from .credential_store import CredentialStore, Keys, MemoryCredentialStore, SQLCredentialStore

__all__ = [
    "CredentialStore",
    "Keys",
    "MemoryCredentialStore",
    "SQLCredentialStore",
]
