"""
Order aggregation, order numbering and the two order state machines.

Payment status (money movement) and fulfillment status are separate
machines with their own transition tables; an Order carries one of each.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from database import next_sequence
from errors import NotFound, ValidationError
from schemas import (
    CommissionSnapshot,
    ItemType,
    Order,
    OrderItem,
    PaymentMethod,
    RefundDetails,
    ShippingAddress,
    TrackingEvent,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


class CartLine(BaseModel):
    """A priced cart line, before it becomes an order item"""
    item_type: ItemType
    item_id: str
    seller_id: str
    seller_name: str
    name: str
    unit_price: int = Field(..., ge=0)
    quantity: int


PromoValidator = Callable[[str, List[CartLine], int], int]
TaxResolver = Callable[[Optional[ShippingAddress], List[CartLine], int], int]

# -----------------------------------------------------------------------------
# State machines
# -----------------------------------------------------------------------------

class StatusMachine:
    def __init__(self, name: str, transitions: Dict[str, FrozenSet[str]]):
        self.name = name
        self.transitions = transitions

    def can(self, current: str, target: str) -> bool:
        return target in self.transitions.get(current, frozenset())

    def check(self, current: str, target: str) -> None:
        if not self.can(current, target):
            raise ValidationError(f"Cannot move {self.name} from {current} to {target}")


PAYMENT = StatusMachine("payment status", {
    "pending": frozenset({"paid", "failed"}),
    "failed": frozenset({"paid", "pending"}),
    "paid": frozenset({"refunded", "partially_refunded"}),
    "partially_refunded": frozenset({"refunded", "partially_refunded"}),
    "refunded": frozenset(),
})

FULFILLMENT = StatusMachine("order status", {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"processing", "shipped", "delivered", "cancelled", "refunded"}),
    "processing": frozenset({"shipped", "cancelled", "refunded"}),
    "shipped": frozenset({"delivered", "refunded"}),
    "delivered": frozenset({"refunded"}),
    "cancelled": frozenset({"refunded"}),
    "refunded": frozenset(),
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def add_tracking_event(order: Order, status: str, message: str, when: Optional[datetime] = None) -> None:
    order.tracking_history.append(TrackingEvent(status=status, timestamp=when or _now(), message=message))


def set_status(order: Order, target: str, message: Optional[str] = None, when: Optional[datetime] = None) -> None:
    FULFILLMENT.check(order.status, target)
    order.status = target
    add_tracking_event(order, target, message or f"Order {target}", when)


def set_payment_status(order: Order, target: str) -> None:
    PAYMENT.check(order.payment_status, target)
    order.payment_status = target

# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------

def format_order_number(seq: int) -> str:
    return f"ORD-{seq:06d}"


def build_order(lines: List[CartLine], *, order_number: str, user_id: str,
                payment_method: PaymentMethod, promo_code: Optional[str] = None,
                promo_validator: Optional[PromoValidator] = None,
                tax_resolver: Optional[TaxResolver] = None, shipping: int = 0,
                shipping_address: Optional[ShippingAddress] = None,
                currency: str = "INR", when: Optional[datetime] = None) -> Order:
    """Turn priced cart lines into an order snapshot.

    Seller id and name are copied onto every item so the order keeps its
    attribution if the seller or the catalog entry changes later. The money
    fields are computed once here and stored.
    """
    if not lines:
        raise ValidationError("Cart is empty")
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"Quantity for {line.name} must be at least 1")
    if shipping < 0:
        raise ValidationError("Shipping cannot be negative")

    items = []
    subtotal = 0
    for line in lines:
        line_total = line.unit_price * line.quantity
        subtotal += line_total
        items.append(OrderItem(
            item_type=line.item_type,
            item_id=line.item_id,
            seller_id=line.seller_id,
            seller_name=line.seller_name,
            name=line.name,
            unit_price=line.unit_price,
            quantity=line.quantity,
            line_total=line_total,
        ))

    discount = 0
    if promo_code:
        if promo_validator is None:
            raise ValidationError("Promo codes are not accepted")
        discount = min(promo_validator(promo_code, lines, subtotal), subtotal)

    tax = tax_resolver(shipping_address, lines, shipping) if tax_resolver else 0

    order = Order(
        order_number=order_number,
        user_id=user_id,
        items=items,
        subtotal=subtotal,
        shipping=shipping,
        discount=discount,
        tax=tax,
        total=subtotal - discount + shipping + tax,
        currency=currency,
        promo_code=promo_code.upper() if promo_code else None,
        payment_method=payment_method,
        shipping_address=shipping_address,
    )
    add_tracking_event(order, "pending", "Order placed", when)
    return order


def insert_order(database, build: Callable[[str], Order]) -> Order:
    """Allocate an order number, build the order with it and insert it.

    A duplicate order number (counter reset, imported data) fails the insert
    on the unique index; the order is then rebuilt with the next number.
    """
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order = build(format_order_number(next_sequence(database, "order")))
        doc = order.model_dump()
        doc["created_at"] = doc["updated_at"] = _now()
        try:
            database["order"].insert_one(doc)
        except DuplicateKeyError:
            logger.warning("Order number %s already taken (attempt %d)", order.order_number, attempt)
            continue
        logger.info("Created order %s total=%d", order.order_number, order.total)
        return order
    raise RuntimeError("Could not allocate a unique order number")


def load_order(database, order_number: str) -> Order:
    doc = database["order"].find_one({"order_number": order_number})
    if not doc:
        raise NotFound("Order not found")
    return order_from_doc(doc)


def order_from_doc(doc: dict) -> Order:
    return Order(**{k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")})


def save_order(database, order: Order, guard: Optional[dict] = None) -> bool:
    """Write the order back; `guard` adds extra conditions to the match."""
    query = {"order_number": order.order_number}
    query.update(guard or {})
    update = order.model_dump()
    update["updated_at"] = _now()
    res = database["order"].update_one(query, {"$set": update})
    return res.matched_count == 1

# -----------------------------------------------------------------------------
# Payment gateway events
# -----------------------------------------------------------------------------

def _already_processed(order: Order, key: str) -> bool:
    if key in order.processed_payment_events:
        logger.info("Ignoring duplicate payment event %s for %s", key, order.order_number)
        return True
    return False


def apply_payment_captured(order: Order, payment_id: str, amount: int, currency: str,
                           method: Optional[str], commission: CommissionSnapshot,
                           when: Optional[datetime] = None) -> bool:
    """Mark the order paid and pin the commission in effect right now.

    Returns False when this payment was already applied.
    """
    key = f"captured:{payment_id}"
    if _already_processed(order, key):
        return False
    if amount != order.total:
        logger.warning("Order %s captured %d but total is %d", order.order_number, amount, order.total)

    set_payment_status(order, "paid")
    when = when or _now()
    details = order.payment_details
    details.payment_id = payment_id
    details.amount = amount
    details.currency = currency
    details.method = method
    details.paid_at = when
    details.failure_reason = None
    order.commission = commission
    order.processed_payment_events.append(key)
    if order.status == "pending":
        set_status(order, "confirmed", "Payment received", when)
    return True


def apply_payment_failed(order: Order, payment_id: str, reason: Optional[str]) -> bool:
    key = f"failed:{payment_id}"
    if _already_processed(order, key):
        return False
    set_payment_status(order, "failed")
    order.payment_details.payment_id = payment_id
    order.payment_details.failure_reason = reason
    order.processed_payment_events.append(key)
    return True


def apply_refund(order: Order, refund_id: str, amount: int, status: str,
                 when: Optional[datetime] = None) -> bool:
    """Record a processed refund. A refund of the full total refunds the order."""
    key = f"refund:{refund_id}"
    if _already_processed(order, key):
        return False
    when = when or _now()
    already = order.refund_details.amount if order.refund_details else 0
    refunded = already + amount
    if refunded > order.total:
        raise ValidationError(f"Refunds exceed the total of {order.order_number}")

    set_payment_status(order, "refunded" if refunded == order.total else "partially_refunded")
    order.refund_details = RefundDetails(amount=refunded, status=status, processed_at=when)
    order.processed_payment_events.append(key)
    if order.payment_status == "refunded" and FULFILLMENT.can(order.status, "refunded"):
        set_status(order, "refunded", "Payment refunded", when)
    return True
