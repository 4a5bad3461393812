"""
Payment QR Exception Hierarchy

Standard error codes for QR issuance, gateway verification and status queries.
All errors use the payment: prefix.
"""
from typing import Optional, Dict, Any


class PaymentQrError(Exception):
    """
    Base exception for all payment QR errors.

    Carries a stable error code, a human readable message, optional details
    and the HTTP status the API layer answers with.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Response body shown to API callers."""
        return self.to_dict()


class SignerConfigurationError(RuntimeError):
    """HMAC secret missing or empty. Raised at startup, never per request."""


# ============================================================================
# Issuance Errors
# ============================================================================

class OrderNotFoundError(PaymentQrError):
    """
    Order does not exist or is not owned by the caller.
    """

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:not_found", message, details)


class OrderNotPayableError(PaymentQrError):
    """
    Order exists but cannot be paid.

    Examples:
    - Order already paid or cancelled
    - Due amount is not positive
    - Currency outside the allow-list
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:not_payable", message, details)


# ============================================================================
# Verification Errors
# ============================================================================

GENERIC_VERIFICATION_FAILURE: Dict[str, Any] = {
    "error_code": "payment:verification_failed",
    "message": "verification failed",
    "details": {}
}


class VerificationError(PaymentQrError):
    """
    Gateway callback rejected.

    The specific reason stays in logs. Callers only ever see a generic
    rejection so the callback cannot be used as an oracle.
    """

    status_code = 400

    def to_public_dict(self) -> Dict[str, Any]:
        return dict(GENERIC_VERIFICATION_FAILURE)


class IntentNotFoundError(PaymentQrError):
    """
    No payment intent with the given qr_id.

    Raised with conceal=True on the gateway callback path, where it is
    answered with the generic rejection instead of a 404.
    """

    status_code = 404

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        conceal: bool = False
    ):
        super().__init__("payment:qr:not_found", message, details)
        self.conceal = conceal
        if conceal:
            self.status_code = VerificationError.status_code

    def to_public_dict(self) -> Dict[str, Any]:
        if self.conceal:
            return dict(GENERIC_VERIFICATION_FAILURE)
        return self.to_dict()


class IntentNotPendingError(VerificationError):
    """
    Intent is no longer pending.

    Examples:
    - Intent already expired or failed
    - Verified intent probed with a different nonce, amount or signature
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:not_pending", message, details)


class QrExpiredError(VerificationError):
    """Callback arrived after expires_at."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:expired", message, details)


class InvalidSignatureError(VerificationError):
    """Supplied signature does not match the stored canonical payload."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:invalid_signature", message, details)


class NonceMismatchError(VerificationError):
    """Supplied nonce differs from the one embedded in the QR."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:nonce_mismatch", message, details)


class AmountMismatchError(VerificationError):
    """Charged amount differs from the QR amount. No tolerance."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:amount_mismatch", message, details)


class OrderAlreadySettledError(VerificationError):
    """Order was paid through another settlement reference."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:already_settled", message, details)


class OrderNotSettleableError(VerificationError):
    """Order vanished or was cancelled after the QR was issued."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:order:not_settleable", message, details)


class SettlementFailedError(PaymentQrError):
    """
    Order Store did not confirm the settlement in time or failed.

    Transient: the intent stays pending and the gateway may retry with
    identical parameters.
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:settlement:failed", message, details)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": "settlement failed, retry with identical parameters",
            "details": {"retryable": True}
        }


# ============================================================================
# Status Query Errors
# ============================================================================

class ForbiddenError(PaymentQrError):
    """Intent belongs to another user."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:qr:forbidden", message, details)
