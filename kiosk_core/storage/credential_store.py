"""
Durable key/value storage for credentials and pending-authorization state.

Pure storage: the store never decides whether a credential is valid. Absence
of a key always means "not yet set".
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from sqlalchemy import delete, select

from kiosk_core.core.models import Credential, PendingAuthorization
from kiosk_core.database import CredentialEntry, Database

logger = structlog.get_logger(__name__)


class Keys:
    """Storage keys."""

    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    MERCHANT_ID = "merchant_id"
    LOCATION_ID = "location_id"
    ORGANIZATION_ID = "organization_id"
    DEVICE_ID = "device_id"
    EXPIRES_AT = "token_expires_at"
    PENDING_STATE = "pending_auth_state"
    PENDING_STARTED_AT = "pending_auth_started_at"
    BACKEND_BASE_URL = "remote_backend_base_url"
    REDIRECT_URI = "remote_redirect_uri"
    DEVICE_CONFLICT = "device_conflict_detected"

    # Cleared on logout; device id and organization id survive.
    CREDENTIAL = (ACCESS_TOKEN, REFRESH_TOKEN, MERCHANT_ID, LOCATION_ID, EXPIRES_AT)
    PENDING = (PENDING_STATE, PENDING_STARTED_AT)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("stored_datetime_unparseable", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CredentialStore(ABC):
    """Abstract key/value store with typed helpers for credential state."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a value, or None when unset."""

    @abstractmethod
    async def set(self, key: str, value: Optional[str]) -> None:
        """Write a value; ``None`` deletes the key."""

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Delete keys; missing keys are ignored."""

    async def load_credential(self) -> Credential:
        """
        Assemble the stored credential.

        A token without a readable expiry (or the reverse) is treated as no
        token at all so the pair invariant holds.
        """
        access_token = await self.get(Keys.ACCESS_TOKEN)
        expires_at = _parse_datetime(await self.get(Keys.EXPIRES_AT))
        if access_token is None or expires_at is None:
            access_token, expires_at = None, None

        return Credential(
            access_token=access_token,
            refresh_token=await self.get(Keys.REFRESH_TOKEN),
            merchant_id=await self.get(Keys.MERCHANT_ID),
            location_id=await self.get(Keys.LOCATION_ID),
            organization_id=await self.get(Keys.ORGANIZATION_ID),
            device_id=await self.get(Keys.DEVICE_ID),
            expires_at=expires_at,
        )

    async def save_credential(self, credential: Credential) -> None:
        """Persist every credential field; ``None`` fields are removed."""
        values: Dict[str, Optional[str]] = {
            Keys.ACCESS_TOKEN: credential.access_token,
            Keys.REFRESH_TOKEN: credential.refresh_token,
            Keys.MERCHANT_ID: credential.merchant_id,
            Keys.LOCATION_ID: credential.location_id,
            Keys.ORGANIZATION_ID: credential.organization_id,
            Keys.DEVICE_ID: credential.device_id,
            Keys.EXPIRES_AT: (
                credential.expires_at.isoformat() if credential.expires_at else None
            ),
        }
        for key, value in values.items():
            await self.set(key, value)

    async def clear_credential(self) -> None:
        await self.delete(*Keys.CREDENTIAL)

    async def load_pending(self) -> Optional[PendingAuthorization]:
        state = await self.get(Keys.PENDING_STATE)
        started_at = _parse_datetime(await self.get(Keys.PENDING_STARTED_AT))
        if state is None or started_at is None:
            return None
        return PendingAuthorization(correlation_state=state, started_at=started_at)

    async def save_pending(self, pending: PendingAuthorization) -> None:
        await self.set(Keys.PENDING_STATE, pending.correlation_state)
        await self.set(Keys.PENDING_STARTED_AT, pending.started_at.isoformat())

    async def clear_pending(self) -> None:
        await self.delete(*Keys.PENDING)

    async def get_flag(self, key: str) -> bool:
        return (await self.get(key)) == "1"

    async def set_flag(self, key: str, enabled: bool) -> None:
        await self.set(key, "1" if enabled else None)


class SQLCredentialStore(CredentialStore):
    """Credential store backed by the ``credential_entries`` table."""

    def __init__(self, database: Database):
        """
        Initialize SQL credential store.

        Args:
            database: Database owning the engine and sessions
        """
        self.database = database

    async def get(self, key: str) -> Optional[str]:
        async with self.database.session() as session:
            result = await session.execute(
                select(CredentialEntry.value).where(CredentialEntry.key == key)
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            await self.delete(key)
            return

        async with self.database.session() as session:
            entry = await session.get(CredentialEntry, key)
            if entry is None:
                session.add(
                    CredentialEntry(key=key, value=value, updated_at=datetime.now(timezone.utc))
                )
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with self.database.session() as session:
            await session.execute(delete(CredentialEntry).where(CredentialEntry.key.in_(keys)))


class MemoryCredentialStore(CredentialStore):
    """Volatile credential store for tests and ephemeral runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self.values.pop(key, None)
        else:
            self.values[key] = value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.values.pop(key, None)
