"""
Payments API Endpoints

QR issuance and status polling for authenticated users, plus the
unauthenticated gateway callback that is authenticated by the QR signature.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Dict, Any, Optional
import logging

from ..models.payment_qr import IssueQrRequest, PaymentQrStatus, VerifyPaymentRequest
from ..mocks.order_store import InMemoryOrderStore
from ..services.order_store import OrderStore
from ..services.payment_qr_service import PaymentQrEngine
from .deps import get_current_user_id, get_engine, get_order_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/qr", status_code=201)
async def issue_qr_endpoint(
    request: IssueQrRequest,
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Issue a signed QR for one of the caller's orders.

    Request Body:
        {"order_id": str}

    Returns:
        {
            "success": true,
            "data": {qr_id, order_id, nonce, amount, currency, expires_at, signature, qr_image},
            "message": str
        }

    Errors:
        404 payment:order:not_found, 409 payment:order:not_payable
    """
    logger.info(f"QR requested: order_id={request.order_id}, user={user_id}")

    intent = await engine.issue_qr(request.order_id, user_id)
    payload = engine.signed_payload(intent)

    return {
        "success": True,
        "data": payload.model_dump(mode="json"),
        "message": f"QR code generated, valid for {engine.ttl_minutes} minutes",
    }


@router.post("/verify")
async def verify_payment_endpoint(
    request: VerifyPaymentRequest,
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Gateway callback after the payer submits payment.

    No user session: the gateway echoes the signed fields from the QR.
    Repeating a successful callback with identical parameters returns the
    same result without settling twice.

    Errors:
        400 payment:verification_failed (reason is never disclosed)
        503 payment:settlement:failed (retryable, intent still pending)
    """
    result = await engine.verify_and_process(
        request.qr_id,
        request.nonce,
        request.amount,
        request.signature
    )

    return {
        "success": True,
        "data": result.model_dump(mode="json"),
        "message": "Payment verified and order confirmed",
    }


@router.get("/qr/{qr_id}/status")
async def get_qr_status_endpoint(
    qr_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Poll the status of the caller's QR.

    Returns:
        {"success": true, "data": {qr_id, order_id, amount, currency, status, expires_at, verified_at}}

    Errors:
        404 payment:qr:not_found, 403 payment:qr:forbidden
    """
    summary = await engine.get_status(qr_id, user_id)
    return {"success": True, "data": summary.model_dump(mode="json")}


@router.get("/qr/{qr_id}")
async def get_qr_endpoint(
    qr_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Full QR details; qr_image and seconds_left are only populated while pending.
    """
    detail = await engine.get_qr(qr_id, user_id)
    return {"success": True, "data": detail.model_dump(mode="json")}


@router.get("/qr")
async def get_qr_history_endpoint(
    status: Optional[PaymentQrStatus] = Query(None, description="Filter by status"),
    order_id: Optional[str] = Query(None, description="Filter by order"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(20, ge=1, le=100, description="Max results"),
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Caller's QR history, newest first.

    Example:
        GET /api/payments/qr?status=verified&skip=0&limit=20
    """
    page = await engine.get_history(user_id, status=status, order_id=order_id, skip=skip, limit=limit)
    return {"success": True, **page.model_dump(mode="json")}


@router.get("/orders/{order_id}/active-qr")
async def get_active_qr_endpoint(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    The currently payable QR of an order; data is null when there is none.
    """
    detail = await engine.get_active_qr_for_order(order_id, user_id)
    return {
        "success": True,
        "data": detail.model_dump(mode="json") if detail else None,
    }


@router.post("/sample-order", status_code=201)
async def create_sample_order_endpoint(
    user_id: str = Depends(get_current_user_id),
    engine: PaymentQrEngine = Depends(get_engine),
    order_store: OrderStore = Depends(get_order_store)
) -> Dict[str, Any]:
    """
    Create a demo order from sample items and immediately issue a QR for it.

    Only available in demo mode, backed by the in-memory order book.
    """
    if not engine.demo_mode or not isinstance(order_store, InMemoryOrderStore):
        raise HTTPException(status_code=404, detail="Not Found")

    order = await order_store.create_sample_order(user_id)
    intent = await engine.issue_qr(order.order_id, user_id)
    payload = engine.signed_payload(intent)

    return {
        "success": True,
        "data": {
            "order": {
                "order_id": order.order_id,
                "items": [
                    {**item, "price": str(item["price"])} for item in order.items
                ],
                "total_amount": str(order.total_amount),
                "currency": order.currency,
                "status": order.status,
            },
            "qr": payload.model_dump(mode="json"),
        },
        "message": f"Sample order created with QR code, valid for {engine.ttl_minutes} minutes",
    }
