import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentStatus(enum.IntEnum):
    PAID = 0
    HANDLED = 1
    REFUND = 2
    ATTEMPT = 3
    ERROR = 4
    VOID = 5


class AttemptKind(str, enum.Enum):
    CHARGE = "charge"
    REFUND = "refund"
    VOID = "void"


class PaymentAttempt(Base):
    """One ledger row per financial action. Refunds and voids carry negative amounts."""

    __tablename__ = "payment_attempts"
    __table_args__ = (
        Index("ix_payment_attempts_transaction_gateway", "transaction_id", "gateway"),
        Index("ix_payment_attempts_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    store_id = Column(String, nullable=True)
    temp_order_number = Column(String, nullable=True)
    member_email = Column(String, nullable=True)
    member_name = Column(String, nullable=True)
    gateway = Column(String, nullable=False)
    kind = Column(String, nullable=False, default=AttemptKind.CHARGE.value)
    amount = Column(Numeric(10, 2), nullable=False)
    card_last_4_digit = Column(String(4), nullable=True)
    card_expire_date = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    charge_id = Column(String, nullable=True, index=True)
    refund_void_transaction_id = Column(String, nullable=True)
    status = Column(Integer, nullable=False, default=int(PaymentStatus.ATTEMPT))
    comment = Column(Text, nullable=True)
    payment_handle_comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class GatewayConfig(Base):
    """A tenant's gateway selection. At most one row per tenant is active."""

    __tablename__ = "gateway_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    gateway_name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_live_mode = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    credentials = relationship(
        "GatewayCredential", back_populates="config", cascade="all, delete-orphan"
    )


class GatewayCredential(Base):
    __tablename__ = "gateway_credentials"
    __table_args__ = (UniqueConstraint("config_id", "key", name="uq_gateway_credentials_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(Integer, ForeignKey("gateway_configs.id"), nullable=False, index=True)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=True)

    config = relationship("GatewayConfig", back_populates="credentials")


class WebhookDeletion(Base):
    """Marker claimed before a remote webhook registration is deleted."""

    __tablename__ = "webhook_deletions"
    __table_args__ = (UniqueConstraint("gateway_name", "webhook_id", name="uq_webhook_deletions"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_name = Column(String, nullable=False)
    webhook_id = Column(String, nullable=False)
    user_id = Column(Integer, nullable=True)
    deleted_at = Column(DateTime, nullable=False, default=utcnow)


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("gateway_name", "event_id", name="uq_processed_webhook_events"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_name = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    attempt_id = Column(Integer, nullable=True)
    outcome = Column(String, nullable=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
