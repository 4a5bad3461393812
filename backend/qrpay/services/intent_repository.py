"""
Payment Intent Repository

Stores and retrieves payment intents. Status changes go through a
compare-and-set on status='pending', so a terminal intent is never rewritten.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db.models import PaymentQrModel
from ..models.payment_qr import PaymentIntent, PaymentQrStatus
from .signature_service import format_amount

logger = logging.getLogger(__name__)


def _to_intent(row: PaymentQrModel) -> PaymentIntent:
    """Convert ORM row to Pydantic model."""
    return PaymentIntent(
        qr_id=row.qr_id,
        order_id=row.order_id,
        user_id=row.user_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        nonce=row.nonce,
        signature=row.signature,
        status=PaymentQrStatus(row.status),
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        verified_at=row.verified_at,
        failure_reason=row.failure_reason,
        settlement_reference=row.settlement_reference,
    )


# ============================================================================
# Creation
# ============================================================================

async def insert_superseding(
    db: AsyncSession,
    intent: PaymentIntent,
    superseded_ids: Sequence[str],
    now: datetime
) -> int:
    """
    Persist a new intent and fail the pending intents it replaces, in one transaction.

    Args:
        db: Database session
        intent: Freshly issued intent
        superseded_ids: Pending intents of the same order
        now: Transition timestamp

    Returns:
        Number of intents moved to failed
    """
    superseded = 0
    if superseded_ids:
        result = await db.execute(
            update(PaymentQrModel)
            .where(
                PaymentQrModel.qr_id.in_(list(superseded_ids)),
                PaymentQrModel.status == PaymentQrStatus.PENDING.value
            )
            .values(
                status=PaymentQrStatus.FAILED.value,
                failure_reason="superseded",
                updated_at=now
            )
        )
        superseded = result.rowcount

    db.add(PaymentQrModel(
        qr_id=intent.qr_id,
        order_id=intent.order_id,
        user_id=intent.user_id,
        amount=format_amount(intent.amount),
        currency=intent.currency,
        nonce=intent.nonce,
        signature=intent.signature,
        status=intent.status.value,
        issued_at=intent.issued_at,
        expires_at=intent.expires_at,
        created_at=now,
        updated_at=now,
    ))
    await db.commit()

    return superseded


# ============================================================================
# Status Transitions
# ============================================================================

async def transition_from_pending(
    db: AsyncSession,
    qr_id: str,
    to_status: PaymentQrStatus,
    now: datetime,
    failure_reason: Optional[str] = None,
    settlement_reference: Optional[str] = None
) -> bool:
    """
    Move a pending intent to a terminal status.

    Returns:
        True if this call performed the transition, False if the intent was
        no longer pending
    """
    values = {"status": to_status.value, "updated_at": now}
    if to_status == PaymentQrStatus.VERIFIED:
        values["verified_at"] = now
        values["settlement_reference"] = settlement_reference
    else:
        values["failure_reason"] = failure_reason

    result = await db.execute(
        update(PaymentQrModel)
        .where(
            PaymentQrModel.qr_id == qr_id,
            PaymentQrModel.status == PaymentQrStatus.PENDING.value
        )
        .values(**values)
    )
    await db.commit()

    changed = result.rowcount == 1
    if not changed:
        logger.debug(f"Transition {qr_id} -> {to_status.value} skipped, no longer pending")
    return changed


# ============================================================================
# Retrieval
# ============================================================================

async def get_intent(db: AsyncSession, qr_id: str) -> Optional[PaymentIntent]:
    """Retrieve intent by qr_id, or None."""
    result = await db.execute(
        select(PaymentQrModel).where(PaymentQrModel.qr_id == qr_id)
    )
    row = result.scalar_one_or_none()
    return _to_intent(row) if row else None


async def get_pending_ids_for_order(db: AsyncSession, order_id: str) -> List[str]:
    """qr_ids of all pending intents of an order."""
    result = await db.execute(
        select(PaymentQrModel.qr_id).where(
            PaymentQrModel.order_id == order_id,
            PaymentQrModel.status == PaymentQrStatus.PENDING.value
        )
    )
    return list(result.scalars().all())


async def get_latest_pending_for_order(
    db: AsyncSession,
    order_id: str,
    user_id: str
) -> Optional[PaymentIntent]:
    """Most recently issued pending intent of an order owned by user_id."""
    result = await db.execute(
        select(PaymentQrModel)
        .where(
            PaymentQrModel.order_id == order_id,
            PaymentQrModel.user_id == user_id,
            PaymentQrModel.status == PaymentQrStatus.PENDING.value
        )
        .order_by(PaymentQrModel.issued_at.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return _to_intent(row) if row else None


async def get_expired_pending_ids(
    db: AsyncSession,
    now: datetime,
    user_id: Optional[str] = None
) -> List[str]:
    """qr_ids of pending intents whose expires_at has passed."""
    query = select(PaymentQrModel.qr_id).where(
        PaymentQrModel.status == PaymentQrStatus.PENDING.value,
        PaymentQrModel.expires_at < now
    )
    if user_id is not None:
        query = query.where(PaymentQrModel.user_id == user_id)

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_user_intents(
    db: AsyncSession,
    user_id: str,
    status: Optional[PaymentQrStatus] = None,
    order_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 20
) -> Tuple[List[PaymentIntent], int]:
    """
    Page through a user's intents.

    Args:
        db: Database session
        user_id: Owner
        status: Optional status filter
        order_id: Optional order filter
        skip: Pagination offset
        limit: Max results

    Returns:
        (intents most recent first, total matching count)
    """
    conditions = [PaymentQrModel.user_id == user_id]
    if status is not None:
        conditions.append(PaymentQrModel.status == status.value)
    if order_id is not None:
        conditions.append(PaymentQrModel.order_id == order_id)

    result = await db.execute(
        select(PaymentQrModel)
        .where(*conditions)
        .order_by(PaymentQrModel.issued_at.desc(), PaymentQrModel.qr_id)
        .offset(skip)
        .limit(limit)
    )
    rows = result.scalars().all()

    total = await db.scalar(
        select(func.count()).select_from(PaymentQrModel).where(*conditions)
    )

    return [_to_intent(row) for row in rows], total or 0
