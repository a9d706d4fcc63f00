import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String(36), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    provider = Column(String(100), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one live payment per order
        Index(
            "uq_payments_live_order_id",
            "order_id",
            unique=True,
            postgresql_where=deleted_at.is_(None),
            sqlite_where=deleted_at.is_(None),
        ),
    )


class SettlementOutboxEntry(Base):
    """A settlement notification still owed (or already delivered) to the order service."""

    __tablename__ = "settlement_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    payment_id = Column(String(36), nullable=False, index=True)
    order_id = Column(String(36), nullable=False)
    outcome = Column(Enum(PaymentStatus), nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    delivered_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
