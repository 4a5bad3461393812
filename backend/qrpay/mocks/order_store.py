"""
Mock Order Store

In-memory order book for demonstration and tests.
Orders are created pending and move to paid exactly once.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any
import logging

from ..exceptions import OrderNotFoundError, OrderNotPayableError
from ..services.order_store import OrderStore, PayableOrder, OrderAlreadySettled, OrderNotSettleable

logger = logging.getLogger(__name__)


# Sample order items for demo purposes
SAMPLE_ITEMS: List[Dict[str, Any]] = [
    {"product_id": "sample-product-001", "name": "MacBook Pro 14-inch M3 Pro", "price": Decimal("1999.00"), "quantity": 1},
    {"product_id": "sample-product-002", "name": "AirPods Pro (2nd Gen)", "price": Decimal("249.00"), "quantity": 1},
]


@dataclass
class Order:
    """Order data structure."""
    order_id: str
    user_id: str
    items: List[Dict[str, Any]]
    total_amount: Decimal
    currency: str
    status: str = "pending"  # "pending", "paid" or "cancelled"
    settlement_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None))


class InMemoryOrderStore(OrderStore):
    """
    Order Store backed by a dict.

    mark_order_paid is idempotent on the settlement reference.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create_order(
        self,
        user_id: str,
        items: List[Dict[str, Any]],
        currency: str = "USD",
        order_id: Optional[str] = None
    ) -> Order:
        """
        Create a pending order.

        Args:
            user_id: Owner of the order
            items: Line items with price and quantity
            currency: Currency code
            order_id: Explicit identifier (generated when omitted)

        Returns:
            Created Order
        """
        total = sum(
            (Decimal(str(item["price"])) * item["quantity"] for item in items),
            Decimal("0")
        )
        order = Order(
            order_id=order_id or f"order_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            items=list(items),
            total_amount=total,
            currency=currency,
        )
        async with self._lock:
            self._orders[order.order_id] = order

        logger.info(f"Created order: {order.order_id}, user={user_id}, total={total} {currency}")
        return order

    async def create_sample_order(self, user_id: str) -> Order:
        """Create a demo order from SAMPLE_ITEMS."""
        return await self.create_order(user_id, SAMPLE_ITEMS, currency="USD")

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    async def cancel_order(self, order_id: str) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order and order.status == "pending":
                order.status = "cancelled"

    async def get_payable_order(self, order_id: str, user_id: str) -> PayableOrder:
        order = self._orders.get(order_id)

        # Orders of other users are reported as missing
        if not order or order.user_id != user_id:
            raise OrderNotFoundError(
                f"Order {order_id} not found",
                details={"order_id": order_id}
            )
        if order.status != "pending":
            raise OrderNotPayableError(
                f"Order cannot be paid, current status: {order.status}",
                details={"order_id": order_id, "status": order.status}
            )

        return PayableOrder(
            order_id=order.order_id,
            amount=order.total_amount,
            currency=order.currency,
        )

    async def mark_order_paid(self, order_id: str, settlement_ref: str) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if not order:
                raise OrderNotSettleable(f"Order {order_id} not found")

            if order.status == "paid":
                if order.settlement_reference == settlement_ref:
                    logger.debug(f"Order {order_id} already paid by {settlement_ref}, no-op")
                    return
                raise OrderAlreadySettled(order_id, order.settlement_reference)

            if order.status != "pending":
                raise OrderNotSettleable(f"Order {order_id} is {order.status}")

            order.status = "paid"
            order.settlement_reference = settlement_ref
            order.paid_at = datetime.now(timezone.utc).replace(tzinfo=None)

        logger.info(f"Order {order_id} marked paid, settlement_ref={settlement_ref}")
