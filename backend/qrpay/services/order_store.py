"""
Order Store collaborator interface.

The payment QR engine never owns orders. It asks the Order Store for the due
amount of a payable order at issuance, and tells it to mark the order paid
once a callback is verified.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class PayableOrder:
    """Due amount of an order that may be paid right now."""
    order_id: str
    amount: Decimal
    currency: str


class OrderStoreError(Exception):
    """Order Store failure. Transient, settlement may be retried, unless a subclass says otherwise."""


class OrderNotSettleable(OrderStoreError):
    """Order can no longer be settled (missing or cancelled). Not retryable."""


class OrderAlreadySettled(OrderNotSettleable):
    """Order is already paid under a different settlement reference."""

    def __init__(self, order_id: str, settlement_ref: str):
        self.order_id = order_id
        self.settlement_ref = settlement_ref
        super().__init__(f"Order {order_id} already settled by {settlement_ref}")


class OrderStore(ABC):
    """Interface the engine consumes."""

    @abstractmethod
    async def get_payable_order(self, order_id: str, user_id: str) -> PayableOrder:
        """
        Resolve an order owned by user_id that is still unpaid.

        Raises:
            OrderNotFoundError: Unknown order or owned by someone else
            OrderNotPayableError: Order exists but is not awaiting payment
        """

    @abstractmethod
    async def mark_order_paid(self, order_id: str, settlement_ref: str) -> None:
        """
        Mark the order paid, attaching settlement_ref.

        Must be idempotent on settlement_ref: repeating the call with the same
        reference is a no-op.

        Raises:
            OrderAlreadySettled: Paid earlier under another reference
            OrderNotSettleable: Order vanished or was cancelled
            OrderStoreError: Transient failure, safe to retry
        """
