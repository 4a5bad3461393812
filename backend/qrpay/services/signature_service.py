"""
Signature Service for Payment QRs

Implements HMAC-SHA256 signature generation and verification over the
canonical QR payload.
"""
import hmac
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any

from ..exceptions import SignerConfigurationError

# Fields covered by the signature. Serialized as a JSON object with sorted
# keys, so the byte order is: amount, currency, expires_at, nonce, order_id, qr_id.
SIGNED_FIELDS = ("qr_id", "nonce", "amount", "currency", "order_id", "expires_at")


def format_amount(amount: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros: 100.00 -> "100"."""
    normalized = Decimal(amount).normalize()
    return format(normalized, "f")


def format_timestamp(value: datetime) -> str:
    """Naive UTC datetime as YYYY-MM-DDTHH:MM:SSZ."""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def create_canonical_json(data: Dict[str, Any]) -> str:
    """
    Create canonical JSON representation for signing.

    Ensures consistent serialization:
    - Only the signed fields, all as strings
    - Sorted keys
    - No whitespace
    - UTF-8 encoding
    """
    canonical = {}
    for field in SIGNED_FIELDS:
        value = data[field]
        if isinstance(value, datetime):
            value = format_timestamp(value)
        elif isinstance(value, (Decimal, int, float)):
            value = format_amount(Decimal(str(value)))
        canonical[field] = str(value)
    return json.dumps(canonical, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


class QrSigner:
    """
    Stateless HMAC-SHA256 signer bound to one secret key.

    The secret is checked once at construction; a missing key is a startup
    failure, never a per-request one.
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise SignerConfigurationError(
                "Missing payment HMAC secret. Set PAYMENT_HMAC_SECRET before starting the service."
            )
        self._key = secret_key.encode('utf-8')

    def sign(self, payload: Dict[str, Any]) -> str:
        """
        Sign a QR payload.

        Args:
            payload: Mapping holding at least the signed fields

        Returns:
            HMAC-SHA256 digest in lowercase hexadecimal
        """
        message = create_canonical_json(payload)
        return hmac.new(self._key, message.encode('utf-8'), hashlib.sha256).hexdigest()

    def verify(self, payload: Dict[str, Any], signature: Any) -> bool:
        """
        Verify a QR payload signature using constant-time comparison.

        Never raises: malformed payloads or signatures verify as False.
        """
        if not isinstance(signature, str):
            return False
        try:
            expected = self.sign(payload)
        except (KeyError, TypeError, ValueError, ArithmeticError):
            return False

        # A non-ASCII signature can never equal a hex digest
        try:
            supplied = signature.encode('ascii')
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(expected.encode('ascii'), supplied)
