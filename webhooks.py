"""
Razorpay webhook handling.

Every event carries an idempotency key recorded on the order, and the order
is saved with a guard on that key, so a redelivered event changes nothing.
"""

import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

from catalog import reserve_order_seats
from errors import InvalidSignature, MarketplaceError
from orders import apply_payment_captured, apply_payment_failed, apply_refund, order_from_doc, save_order
from payouts import get_commission_config, refund_order_line

logger = logging.getLogger(__name__)

RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    if not signature:
        raise InvalidSignature("Missing signature")
    expected = sign(body, RAZORPAY_WEBHOOK_SECRET if secret is None else secret)
    if not hmac.compare_digest(signature, expected):
        logger.error("Invalid webhook signature")
        raise InvalidSignature("Invalid signature")


def _find_order(database, field: str, value: Optional[str]):
    if not value:
        return None
    doc = database["order"].find_one({field: value})
    return order_from_doc(doc) if doc else None


def handle_event(database, event: Dict[str, Any]) -> bool:
    """Apply one webhook event. Returns True when an order changed."""
    event_type = event.get("event")
    payload = event.get("payload", {})

    if event_type == "payment.captured":
        return _payment_captured(database, payload["payment"]["entity"])
    if event_type == "payment.failed":
        return _payment_failed(database, payload["payment"]["entity"])
    if event_type == "refund.processed":
        return _refund_processed(database, payload["refund"]["entity"])
    logger.info("Unhandled webhook event: %s", event_type)
    return False


def _save_once(database, order, key: str) -> bool:
    saved = save_order(database, order, guard={"processed_payment_events": {"$ne": key}})
    if not saved:
        logger.info("Event %s for %s was applied concurrently", key, order.order_number)
    return saved


def _payment_captured(database, payment: Dict[str, Any]) -> bool:
    order = _find_order(database, "payment_details.gateway_order_id", payment.get("order_id"))
    if order is None:
        logger.warning("Captured payment %s for unknown order %s", payment.get("id"), payment.get("order_id"))
        return False
    snapshot, _ = get_commission_config(database)
    try:
        changed = apply_payment_captured(order, payment["id"], int(payment["amount"]),
                                         payment.get("currency", order.currency), payment.get("method"),
                                         snapshot)
    except MarketplaceError as exc:
        logger.error("Cannot capture payment %s on %s: %s", payment["id"], order.order_number, exc.message)
        return False
    if not changed or not _save_once(database, order, f"captured:{payment['id']}"):
        return False
    logger.info("Order %s marked as paid", order.order_number)
    reserve_order_seats(database, order.order_number)
    return True


def _payment_failed(database, payment: Dict[str, Any]) -> bool:
    order = _find_order(database, "payment_details.gateway_order_id", payment.get("order_id"))
    if order is None:
        return False
    try:
        changed = apply_payment_failed(order, payment["id"], payment.get("error_description"))
    except MarketplaceError as exc:
        logger.error("Cannot fail payment %s on %s: %s", payment["id"], order.order_number, exc.message)
        return False
    if not changed or not _save_once(database, order, f"failed:{payment['id']}"):
        return False
    logger.info("Order %s payment failed", order.order_number)
    return True


def _refund_processed(database, refund: Dict[str, Any]) -> bool:
    order = _find_order(database, "payment_details.payment_id", refund.get("payment_id"))
    if order is None:
        return False
    try:
        changed = apply_refund(order, refund["id"], int(refund["amount"]), refund.get("status", "processed"))
    except MarketplaceError as exc:
        logger.error("Cannot refund %s on %s: %s", refund["id"], order.order_number, exc.message)
        return False
    if not changed or not _save_once(database, order, f"refund:{refund['id']}"):
        return False
    logger.info("Order %s refund processed (%s)", order.order_number, order.payment_status)

    if order.payment_status == "refunded":
        for index in range(len(order.items)):
            refund_order_line(database, order.order_number, index)
    return True
