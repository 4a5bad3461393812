"""
SQLAlchemy ORM Models for QR Pay

Defines the payment_qrs table backing every issued payment intent.
Rows are never deleted; they are the audit trail of issued QRs.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentQrModel(Base):
    """
    ORM model for payment_qrs table.

    Keyed by qr_id, unique on nonce, indexed on (order_id, status) for
    supersession checks.
    """
    __tablename__ = "payment_qrs"

    qr_id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(String, nullable=False)  # Decimal as plain string
    currency = Column(String, nullable=False)
    nonce = Column(String, nullable=False, unique=True)
    signature = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    verified_at = Column(DateTime)
    failure_reason = Column(Text)
    settlement_reference = Column(String)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'verified', 'expired', 'failed')",
            name="payment_qr_status_check"
        ),
        Index("ix_payment_qrs_order_status", "order_id", "status"),
    )
