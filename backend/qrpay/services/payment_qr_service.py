"""
Payment QR Service

Owns the lifecycle of a payment intent: issuance, signing, expiry, gateway
callback verification and the idempotent transition to verified.

Every transition out of pending happens while holding the intent's keyed lock,
followed by a compare-and-set on status='pending'. Concurrent callbacks for the
same qr_id therefore settle the order at most once; the losers observe the
terminal state.
"""
import asyncio
import hmac
import json
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from ..exceptions import (
    AmountMismatchError,
    ForbiddenError,
    IntentNotFoundError,
    IntentNotPendingError,
    InvalidSignatureError,
    NonceMismatchError,
    OrderAlreadySettledError,
    OrderNotSettleableError,
    OrderNotPayableError,
    QrExpiredError,
    SettlementFailedError,
)
from ..models.payment_qr import (
    PaymentIntent,
    PaymentIntentSummary,
    PaymentQrDetail,
    PaymentQrStatus,
    QrHistoryPage,
    SignedQrPayload,
    VerificationResult,
)
from . import intent_repository
from .keyed_lock import KeyedLock
from .order_store import OrderStore, OrderNotSettleable, OrderAlreadySettled
from .qr_image import render_data_url
from .signature_service import QrSigner, format_amount, format_timestamp

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC now, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentQrEngine:
    """
    Payment intent lifecycle.

    Collaborators are injected at startup: the signer, the Order Store and a
    session factory for the intent table. The clock is injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        signer: QrSigner,
        order_store: OrderStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        render_images: bool = True
    ):
        self._session_factory = session_factory
        self._signer = signer
        self._order_store = order_store
        self._settings = settings
        self._clock = clock
        self._render_images = render_images
        self._locks = KeyedLock()
        self._ttl = timedelta(minutes=settings.qr_ttl_minutes)

    @property
    def ttl_minutes(self) -> int:
        return self._settings.qr_ttl_minutes

    @property
    def demo_mode(self) -> bool:
        return self._settings.demo_mode

    @staticmethod
    def _qr_key(qr_id: str) -> str:
        return f"qr:{qr_id}"

    @staticmethod
    def _order_key(order_id: str) -> str:
        return f"order:{order_id}"

    # ============================================================================
    # Issuance
    # ============================================================================

    async def issue_qr(self, order_id: str, user_id: str) -> PaymentIntent:
        """
        Issue a signed, time-limited payment intent for an order.

        Any pending intent of the same order is superseded (moved to failed)
        in the same transaction that stores the new one, so at most one
        intent per order can settle it.

        Args:
            order_id: Order to pay
            user_id: Authenticated caller, must own the order

        Returns:
            The new pending PaymentIntent

        Raises:
            OrderNotFoundError: Unknown order or not owned by user_id
            OrderNotPayableError: Order not awaiting payment, bad amount or currency
        """
        async with self._locks.acquire(self._order_key(order_id)):
            async with self._session_factory() as db:
                stale_ids = await intent_repository.get_pending_ids_for_order(db, order_id)

            # Hold the stale intents' locks so none of them settles mid-supersession
            async with self._locks.acquire_many(self._qr_key(qr_id) for qr_id in stale_ids):
                order = await self._order_store.get_payable_order(order_id, user_id)

                if order.amount <= 0:
                    raise OrderNotPayableError(
                        "Order has no positive amount due",
                        details={"order_id": order_id}
                    )
                if order.currency not in self._settings.allowed_currencies:
                    raise OrderNotPayableError(
                        f"Currency {order.currency} is not supported",
                        details={"order_id": order_id, "currency": order.currency}
                    )

                issued_at = self._clock().replace(microsecond=0)
                fields = {
                    "qr_id": f"qr_{secrets.token_hex(16)}",
                    "nonce": secrets.token_urlsafe(24),
                    "amount": Decimal(order.amount),
                    "currency": order.currency,
                    "order_id": order_id,
                    "expires_at": issued_at + self._ttl,
                }
                intent = PaymentIntent(
                    **fields,
                    user_id=user_id,
                    signature=self._signer.sign(fields),
                    status=PaymentQrStatus.PENDING,
                    issued_at=issued_at,
                )

                async with self._session_factory() as db:
                    superseded = await intent_repository.insert_superseding(
                        db, intent, stale_ids, issued_at
                    )

        if superseded:
            logger.info(f"Superseded {superseded} pending QR(s) for order_id={order_id}")
        logger.info(
            f"QR issued: qr_id={intent.qr_id}, order_id={order_id}, "
            f"amount={format_amount(intent.amount)} {intent.currency}, "
            f"expires_at={format_timestamp(intent.expires_at)}"
        )

        return intent

    def signed_payload(self, intent: PaymentIntent, with_image: bool = True) -> SignedQrPayload:
        """
        Payload the payer's app or the QR image carries to the gateway.
        """
        content = {
            "qr_id": intent.qr_id,
            "order_id": intent.order_id,
            "nonce": intent.nonce,
            "amount": format_amount(intent.amount),
            "currency": intent.currency,
            "expires_at": format_timestamp(intent.expires_at),
            "signature": intent.signature,
        }
        qr_image = None
        if with_image and self._render_images:
            qr_image = render_data_url(json.dumps(content, separators=(',', ':')))

        return SignedQrPayload(
            qr_id=intent.qr_id,
            order_id=intent.order_id,
            nonce=intent.nonce,
            amount=intent.amount,
            currency=intent.currency,
            expires_at=intent.expires_at,
            signature=intent.signature,
            qr_image=qr_image,
        )

    # ============================================================================
    # Verification
    # ============================================================================

    async def verify_and_process(
        self,
        qr_id: str,
        nonce: str,
        amount: Decimal,
        signature: str
    ) -> VerificationResult:
        """
        Verify a gateway callback and settle the order exactly once.

        Check order: existence, pending status (verified replays return the
        stored result), expiry, signature, nonce, amount, then settlement.

        Args:
            qr_id: Intent identifier from the QR
            nonce: Nonce from the QR
            amount: Amount the gateway charged
            signature: Signature from the QR

        Returns:
            VerificationResult of the (first) successful settlement

        Raises:
            IntentNotFoundError, IntentNotPendingError, QrExpiredError,
            InvalidSignatureError, NonceMismatchError, AmountMismatchError,
            OrderAlreadySettledError, OrderNotSettleableError: Rejected, intent terminal
            SettlementFailedError: Transient, intent still pending
        """
        async with self._locks.acquire(self._qr_key(qr_id)):
            async with self._session_factory() as db:
                intent = await intent_repository.get_intent(db, qr_id)

            if intent is None:
                logger.warning(f"Verification for unknown qr_id={qr_id}")
                raise IntentNotFoundError(
                    f"No payment QR with ID: {qr_id}",
                    details={"qr_id": qr_id},
                    conceal=True
                )

            if intent.status != PaymentQrStatus.PENDING:
                return self._replay_result(intent, nonce, amount, signature)

            now = self._clock()

            if now > intent.expires_at:
                await self._transition(intent, PaymentQrStatus.EXPIRED, now, "expired")
                logger.info(f"Verification after expiry: qr_id={qr_id}")
                raise QrExpiredError("QR code has expired", details={"qr_id": qr_id})

            if not self._signer.verify(intent.signed_fields(), signature):
                await self._transition(intent, PaymentQrStatus.FAILED, now, "invalid_signature")
                logger.warning(f"Invalid signature for qr_id={qr_id}, possible tampering")
                raise InvalidSignatureError("Invalid payment signature", details={"qr_id": qr_id})

            if not self._same_nonce(nonce, intent.nonce):
                await self._transition(intent, PaymentQrStatus.FAILED, now, "nonce_mismatch")
                logger.warning(f"Nonce mismatch for qr_id={qr_id}, possible replay")
                raise NonceMismatchError("Nonce mismatch", details={"qr_id": qr_id})

            if amount != intent.amount:
                await self._transition(intent, PaymentQrStatus.FAILED, now, "amount_mismatch")
                logger.warning(
                    f"Amount mismatch for qr_id={qr_id}: "
                    f"expected={format_amount(intent.amount)} got={amount}"
                )
                raise AmountMismatchError(
                    "Payment amount mismatch",
                    details={"qr_id": qr_id}
                )

            await self._settle(intent, now)

            verified_at = self._clock()
            transitioned = await self._transition(
                intent,
                PaymentQrStatus.VERIFIED,
                verified_at,
                settlement_reference=intent.qr_id
            )

            if not transitioned:
                # Another process moved the intent first; answer with what it recorded
                async with self._session_factory() as db:
                    current = await intent_repository.get_intent(db, qr_id)
                logger.info(f"Lost verified transition for qr_id={qr_id}, status={current.status.value}")
                return self._replay_result(current, nonce, amount, signature)

        logger.info(f"Payment confirmed: qr_id={qr_id}, order_id={intent.order_id}")

        return VerificationResult(
            qr_id=intent.qr_id,
            order_id=intent.order_id,
            status=PaymentQrStatus.VERIFIED,
            verified_at=verified_at,
            settlement_reference=intent.qr_id,
        )

    async def _settle(self, intent: PaymentIntent, now: datetime) -> None:
        """Ask the Order Store to mark the order paid, bounded by the settlement timeout."""
        try:
            await asyncio.wait_for(
                self._order_store.mark_order_paid(intent.order_id, intent.qr_id),
                timeout=self._settings.settlement_timeout_seconds
            )
        except OrderAlreadySettled as e:
            await self._transition(intent, PaymentQrStatus.FAILED, now, "order_already_settled")
            logger.warning(f"Order {intent.order_id} already settled, qr_id={intent.qr_id}: {e}")
            raise OrderAlreadySettledError(str(e), details={"qr_id": intent.qr_id}) from e
        except OrderNotSettleable as e:
            await self._transition(intent, PaymentQrStatus.FAILED, now, "order_not_settleable")
            logger.warning(f"Order {intent.order_id} not settleable for qr_id={intent.qr_id}: {e}")
            raise OrderNotSettleableError(str(e), details={"qr_id": intent.qr_id}) from e
        except Exception as e:
            # OrderStoreError, timeout or any unexpected store failure: intent stays pending
            logger.error(
                f"Settlement failed for qr_id={intent.qr_id}, order_id={intent.order_id}: "
                f"{type(e).__name__} {e}"
            )
            raise SettlementFailedError(
                "Order settlement failed",
                details={"qr_id": intent.qr_id}
            ) from e

    def _replay_result(
        self,
        intent: PaymentIntent,
        nonce: str,
        amount: Decimal,
        signature: str
    ) -> VerificationResult:
        """Answer a callback for an intent that already left pending."""
        if (
            intent.status == PaymentQrStatus.VERIFIED
            and self._same_nonce(nonce, intent.nonce)
            and amount == intent.amount
            and self._signer.verify(intent.signed_fields(), signature)
        ):
            logger.info(f"Duplicate callback for verified qr_id={intent.qr_id}, returning recorded result")
            return VerificationResult(
                qr_id=intent.qr_id,
                order_id=intent.order_id,
                status=PaymentQrStatus.VERIFIED,
                verified_at=intent.verified_at,
                settlement_reference=intent.settlement_reference,
            )

        if intent.status == PaymentQrStatus.VERIFIED:
            logger.warning(f"Mismatched callback for verified qr_id={intent.qr_id}, possible replay")
        raise IntentNotPendingError(
            f"QR is no longer valid, status: {intent.status.value}",
            details={"qr_id": intent.qr_id, "status": intent.status.value}
        )

    @staticmethod
    def _same_nonce(supplied: str, stored: str) -> bool:
        return hmac.compare_digest(str(supplied).encode('utf-8'), stored.encode('utf-8'))

    async def _transition(
        self,
        intent: PaymentIntent,
        to_status: PaymentQrStatus,
        now: datetime,
        failure_reason: Optional[str] = None,
        settlement_reference: Optional[str] = None
    ) -> bool:
        async with self._session_factory() as db:
            return await intent_repository.transition_from_pending(
                db,
                intent.qr_id,
                to_status,
                now,
                failure_reason=failure_reason,
                settlement_reference=settlement_reference
            )

    # ============================================================================
    # Expiry
    # ============================================================================

    async def _expire_if_stale(self, qr_id: str) -> bool:
        """Expire one pending intent past expires_at, under its lock."""
        async with self._locks.acquire(self._qr_key(qr_id)):
            async with self._session_factory() as db:
                intent = await intent_repository.get_intent(db, qr_id)

            now = self._clock()
            if intent is None or intent.status != PaymentQrStatus.PENDING or now <= intent.expires_at:
                return False

            expired = await self._transition(intent, PaymentQrStatus.EXPIRED, now, "expired")

        if expired:
            logger.info(f"QR expired: qr_id={qr_id}, order_id={intent.order_id}")
        return expired

    async def expire_stale(self, user_id: Optional[str] = None) -> int:
        """
        Expire every pending intent past expires_at.

        Run periodically by the scheduler; also used to sync a user's intents
        before listing their history.

        Returns:
            Number of intents moved to expired
        """
        async with self._session_factory() as db:
            candidates = await intent_repository.get_expired_pending_ids(db, self._clock(), user_id)

        count = 0
        for qr_id in candidates:
            if await self._expire_if_stale(qr_id):
                count += 1

        if count:
            logger.info(f"Expiry sweep moved {count} QR(s) to expired")
        return count

    # ============================================================================
    # Queries
    # ============================================================================

    async def _load_owned(self, qr_id: str, user_id: str) -> PaymentIntent:
        """Load an intent for its owner, applying lazy expiry."""
        async with self._session_factory() as db:
            intent = await intent_repository.get_intent(db, qr_id)

        if intent is None:
            raise IntentNotFoundError(f"No payment QR with ID: {qr_id}", details={"qr_id": qr_id})
        if intent.user_id != user_id:
            logger.warning(f"User {user_id} requested QR {qr_id} owned by another user")
            raise ForbiddenError("You do not have access to this payment QR", details={"qr_id": qr_id})

        if intent.status == PaymentQrStatus.PENDING and self._clock() > intent.expires_at:
            await self._expire_if_stale(qr_id)
            async with self._session_factory() as db:
                intent = await intent_repository.get_intent(db, qr_id)

        return intent

    @staticmethod
    def _summary(intent: PaymentIntent) -> PaymentIntentSummary:
        return PaymentIntentSummary(
            qr_id=intent.qr_id,
            order_id=intent.order_id,
            amount=intent.amount,
            currency=intent.currency,
            status=intent.status,
            expires_at=intent.expires_at,
            verified_at=intent.verified_at,
        )

    def _detail(self, intent: PaymentIntent) -> PaymentQrDetail:
        qr_image = None
        seconds_left = 0
        if intent.status == PaymentQrStatus.PENDING:
            qr_image = self.signed_payload(intent).qr_image
            seconds_left = max(0, int((intent.expires_at - self._clock()).total_seconds()))

        return PaymentQrDetail(
            **self._summary(intent).model_dump(),
            qr_image=qr_image,
            seconds_left=seconds_left,
        )

    async def get_status(self, qr_id: str, user_id: str) -> PaymentIntentSummary:
        """
        Current status of an intent for its owner.

        Raises:
            IntentNotFoundError: Unknown qr_id
            ForbiddenError: Intent owned by another user
        """
        intent = await self._load_owned(qr_id, user_id)
        return self._summary(intent)

    async def get_qr(self, qr_id: str, user_id: str) -> PaymentQrDetail:
        """Status plus a re-rendered QR image while the intent is still payable."""
        intent = await self._load_owned(qr_id, user_id)
        return self._detail(intent)

    async def get_active_qr_for_order(self, order_id: str, user_id: str) -> Optional[PaymentQrDetail]:
        """
        The payable QR of an order, or None when it expired, settled,
        failed or was never issued.
        """
        async with self._session_factory() as db:
            intent = await intent_repository.get_latest_pending_for_order(db, order_id, user_id)

        if intent is None:
            return None
        if self._clock() > intent.expires_at:
            await self._expire_if_stale(intent.qr_id)
            return None

        return self._detail(intent)

    async def get_history(
        self,
        user_id: str,
        status: Optional[PaymentQrStatus] = None,
        order_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> QrHistoryPage:
        """
        Page through every QR issued to a user, newest first.

        Stale pending intents are expired before querying so the status
        filter sees current states.
        """
        await self.expire_stale(user_id=user_id)

        async with self._session_factory() as db:
            intents, total = await intent_repository.get_user_intents(
                db, user_id, status=status, order_id=order_id, skip=skip, limit=limit
            )

        return QrHistoryPage(data=[self._summary(i) for i in intents], total=total)
