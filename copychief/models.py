"""SQLAlchemy models for accounts, balances, reservations and usage."""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from copychief.config import settings
from copychief.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceField(str, enum.Enum):
    """Balance columns that may be mutated through the entitlement store.

    CONSUMED is composite: it draws down monthly tokens first, then extra
    tokens, and advances total_tokens_used by the full amount.
    """

    MONTHLY = "monthly"
    EXTRA = "extra"
    CONSUMED = "consumed"


class BalanceChangeReason(str, enum.Enum):
    CONSUMPTION = "consumption"
    PURCHASE = "purchase"
    ADMIN_GRANT = "admin_grant"
    MONTHLY_RESET = "monthly_reset"


class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    RELEASED = "released"
    EXPIRED = "expired"


class Account(Base):
    """A CopyChief user and the token balance that gates their LLM usage."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Token balance. Only copychief.services.entitlement_store writes these.
    monthly_allowance: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.default_monthly_tokens, nullable=False
    )
    monthly_tokens: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.default_monthly_tokens, nullable=False
    )
    extra_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=True
    )
    # Last threshold level signalled ("none", "informational", "critical");
    # cleared by the monthly reset
    notified_level: Mapped[str] = mapped_column(String(20), default="none", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    audit_entries: Mapped[list["BalanceAuditEntry"]] = relationship(
        back_populates="account", lazy="raise"
    )


class BalanceAuditEntry(Base):
    """Append-only trail of every balance mutation: what changed, who, and why."""

    __tablename__ = "balance_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    field: Mapped[BalanceField] = mapped_column(Enum(BalanceField), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[BalanceChangeReason] = mapped_column(Enum(BalanceChangeReason), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    account: Mapped["Account"] = relationship(back_populates="audit_entries")


class TokenReservation(Base):
    """A short-lived hold against an account's balance while a completion runs."""

    __tablename__ = "token_reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus), default=ReservationStatus.ACTIVE, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TokenUsageRecord(Base):
    """Immutable per-exchange usage entry; feeds the account's consumed total."""

    __tablename__ = "token_usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    exchange_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    # True when counts came from the character-length estimator, not the provider
    estimated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class TokenPurchase(Base):
    """A processed token package purchase; ``external_id`` makes webhook replays no-ops."""

    __tablename__ = "token_purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
