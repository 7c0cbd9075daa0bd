"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gateway.models.api import AdmissionEventType, RequestType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One row per identity-provider subject. Holds the subscription tier and
    the running token total for the current billing period.
    """

    __tablename__ = "accounts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity fields
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )

    # Quota for the current period
    token_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=100_000)
    tokens_used_current_period: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    period_start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Billing processor references
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_usage_reported_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    overage_tokens_reported: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Activity
    last_active_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "tokens_used_current_period >= 0", name="ck_tokens_used_non_negative"
        ),
        CheckConstraint("token_limit >= 0", name="ck_token_limit_non_negative"),
        CheckConstraint(
            "subscription_tier IN ('free', 'pro', 'enterprise')", name="ck_subscription_tier"
        ),
        Index("idx_accounts_tier", "subscription_tier"),
        Index("idx_accounts_period_start", "period_start_date"),
        Index(
            "idx_accounts_stripe_customer",
            "stripe_customer_id",
            postgresql_where=(stripe_customer_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(id={self.id}, external_id={self.external_id}, "
            f"tier={self.subscription_tier}, used={self.tokens_used_current_period})>"
        )


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    Append-only ledger of every metered upstream call.
    """

    __tablename__ = "usage_records"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Foreign Key to Account
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    conversation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Token counts
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_read_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_creation_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Request details
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    request_type: Mapped[RequestType] = mapped_column(
        SQLEnum(
            RequestType,
            name="request_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Cost, fixed at write time
    estimated_cost_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 6), nullable=False, default=Decimal("0")
    )
    billing_period: Mapped[date] = mapped_column(Date, nullable=False)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "input_tokens >= 0 AND output_tokens >= 0 "
            "AND cache_read_tokens >= 0 AND cache_creation_tokens >= 0",
            name="ck_usage_tokens_non_negative",
        ),
        Index("idx_usage_account_period", "account_id", "billing_period"),
        Index("idx_usage_account_created", "account_id", "created_at"),
        Index(
            "idx_usage_conversation",
            "conversation_id",
            postgresql_where=(conversation_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageRecord(id={self.id}, account_id={self.account_id}, "
            f"total={self.total_tokens}, success={self.success})>"
        )


class AdmissionEvent(Base):
    """
    ORM model for rate_limit_events table.

    Audit trail of admission outcomes, used for abuse detection.
    """

    __tablename__ = "rate_limit_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    event_type: Mapped[AdmissionEventType] = mapped_column(
        SQLEnum(
            AdmissionEventType,
            name="admission_event_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_rate_limit_events_account_created", "account_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<AdmissionEvent(account_id={self.account_id}, type={self.event_type})>"
