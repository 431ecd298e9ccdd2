"""SQLAlchemy models for durable kiosk state."""
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class CredentialEntry(Base):
    """
    Key/value rows backing the credential store.

    Holds tokens, merchant/location identifiers, device identity and the
    pending-authorization correlation state. A missing row means "not set".
    """

    __tablename__ = "credential_entries"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        """String representation of CredentialEntry (value omitted)."""
        return f"<CredentialEntry(key={self.key})>"


class IdempotencyRecord(Base):
    """
    Idempotency ledger table.

    Maps a transaction id to the idempotency key submitted with every
    attempt of that transaction. The creation time is stored explicitly and
    drives pruning; transaction ids are opaque.
    """

    __tablename__ = "idempotency_records"

    transaction_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_idempotency_records_created_at", "created_at"),)

    def __repr__(self) -> str:
        """String representation of IdempotencyRecord."""
        return (
            f"<IdempotencyRecord(transaction_id={self.transaction_id}, "
            f"created_at={self.created_at})>"
        )
