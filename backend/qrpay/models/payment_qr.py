"""
Pydantic Payment QR Models

PaymentIntent is the record backing one issued QR. The request models are the
validation boundary for the HTTP layer; no behavior lives on the data.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class PaymentQrStatus(str, Enum):
    """
    Lifecycle states of a payment intent.

    pending moves to exactly one of the other three, which are terminal.
    """
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    FAILED = "failed"


class PaymentIntent(BaseModel):
    """
    Stored payment intent.

    Immutable after issuance: qr_id, order_id, user_id, amount, currency,
    nonce, signature, issued_at, expires_at. Only status, verified_at,
    failure_reason and settlement_reference change, and only once.
    """
    qr_id: str = Field(pattern="^qr_[0-9a-f]{32}$")
    order_id: str
    user_id: str
    amount: Decimal = Field(gt=0)
    currency: str
    nonce: str
    signature: str = Field(pattern="^[0-9a-f]{64}$")
    status: PaymentQrStatus
    issued_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    settlement_reference: Optional[str] = None

    def signed_fields(self) -> dict:
        """Fields covered by the HMAC signature."""
        return {
            "qr_id": self.qr_id,
            "nonce": self.nonce,
            "amount": self.amount,
            "currency": self.currency,
            "order_id": self.order_id,
            "expires_at": self.expires_at,
        }


class SignedQrPayload(BaseModel):
    """Payload handed to the payer and embedded in the QR image."""
    qr_id: str
    order_id: str
    nonce: str
    amount: Decimal
    currency: str
    expires_at: datetime
    signature: str
    qr_image: Optional[str] = Field(
        default=None,
        description="PNG data URL rendering of the signed payload"
    )


class VerificationResult(BaseModel):
    """Outcome of a successful gateway callback."""
    success: bool = True
    qr_id: str
    order_id: str
    status: PaymentQrStatus
    verified_at: datetime
    settlement_reference: str


class PaymentIntentSummary(BaseModel):
    """Read model returned to the intent owner."""
    qr_id: str
    order_id: str
    amount: Decimal
    currency: str
    status: PaymentQrStatus
    expires_at: datetime
    verified_at: Optional[datetime] = None


class PaymentQrDetail(PaymentIntentSummary):
    """Summary plus a display-ready image while the QR is still payable."""
    qr_image: Optional[str] = None
    seconds_left: int = 0


class QrHistoryPage(BaseModel):
    """One page of a user's QR history, newest first."""
    data: List[PaymentIntentSummary]
    total: int


# ==================== Request Models ====================

class IssueQrRequest(BaseModel):
    """Issue a QR for one of the caller's orders."""
    order_id: str = Field(min_length=1)


class VerifyPaymentRequest(BaseModel):
    """
    Sent by the payment gateway after the payer scans the QR and pays.

    The gateway echoes back the signed fields embedded in the QR.
    """
    qr_id: str = Field(min_length=1)
    nonce: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, description="Amount actually charged")
    signature: str = Field(min_length=1)

    model_config = {
        "json_schema_extra": {
            "example": {
                "qr_id": "qr_3f9a1c0e5b7d4a2f8e6c1b0a9d8e7f6a",
                "nonce": "Jx2vQ0m3yS1gWc9pLk4tNf7rHb8eZa5d",
                "amount": "100.00",
                "signature": "a1b2c3d4e5f67890abcdef1234567890abcdef1234567890abcdef1234567890"
            }
        }
    }
