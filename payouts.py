"""
Commission settings, seller payouts and refund reversal.

Line payout status moves pending -> included (batch issued) -> paid (transfer
confirmed). A batch that fails or is cancelled puts its lines back to pending.
Refunds move pending/included lines to refunded; a refund of a line that was
already paid out leaves it paid and records a clawback for the seller's next
batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, Field
from pymongo import DESCENDING

from database import as_utc, create_document, next_sequence
from errors import ConfigurationError, NotFound, ValidationError
from orders import StatusMachine, load_order, order_from_doc, save_order
from pricing import as_decimal, percent_of
from schemas import CommissionConfig, CommissionSnapshot, Order, Payout, PayoutAdjustment, PayoutLine

logger = logging.getLogger(__name__)

# a partial gateway refund is not tied to lines; their payout is unaffected
PAYABLE_PAYMENT_STATUSES = ("paid", "partially_refunded")

PAYOUT = StatusMachine("payout status", {
    "pending": frozenset({"processing", "completed", "failed", "cancelled"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
})

# -----------------------------------------------------------------------------
# Commission configuration
# -----------------------------------------------------------------------------

def validate_commission_config(config: CommissionConfig) -> None:
    platform = as_decimal(config.platform_commission_pct)
    processing = as_decimal(config.payment_processing_fee_pct)
    for label, pct in (("Platform commission", platform), ("Payment processing fee", processing)):
        if pct < 0 or pct >= 100:
            raise ConfigurationError(f"{label} must be between 0 and 100")
    if platform + processing >= 100:
        raise ConfigurationError("Platform commission and processing fee must add up to less than 100%")


def save_commission_config(database, config: CommissionConfig) -> CommissionSnapshot:
    """Store a new settings version. Earlier versions are never modified."""
    validate_commission_config(config)
    version = next_sequence(database, "settings")
    doc = config.model_dump()
    doc["version"] = version
    create_document(database, "settings", doc)
    logger.info("Commission settings version %d: %s%% + %s%%", version,
                config.platform_commission_pct, config.payment_processing_fee_pct)
    return CommissionSnapshot(
        version=version,
        platform_commission_pct=config.platform_commission_pct,
        payment_processing_fee_pct=config.payment_processing_fee_pct,
    )


def get_commission_config(database) -> Tuple[CommissionSnapshot, CommissionConfig]:
    """Return the newest settings version, creating the defaults on first use."""
    doc = database["settings"].find_one({}, sort=[("version", DESCENDING)])
    if doc is None:
        config = CommissionConfig()
        return save_commission_config(database, config), config
    config = CommissionConfig(**{k: doc[k] for k in CommissionConfig.model_fields if k in doc})
    snapshot = CommissionSnapshot(
        version=doc["version"],
        platform_commission_pct=config.platform_commission_pct,
        payment_processing_fee_pct=config.payment_processing_fee_pct,
    )
    return snapshot, config

# -----------------------------------------------------------------------------
# Calculation
# -----------------------------------------------------------------------------

def split_line_amount(gross: int, commission: CommissionSnapshot) -> Tuple[int, int, int]:
    """Split a line amount into (platform fee, processing fee, seller net).

    The seller gets the remainder, so the three parts always add up to gross.
    """
    platform_fee = percent_of(gross, commission.platform_commission_pct)
    processing_fee = percent_of(gross, commission.payment_processing_fee_pct)
    return platform_fee, processing_fee, gross - platform_fee - processing_fee


def compute_payout(order: Order, commission: Optional[CommissionSnapshot] = None) -> List[PayoutLine]:
    """Payout lines for the pending items of one paid (or partially refunded) order.

    The commission pinned on the order when it was paid wins over the one
    passed in; the argument only covers orders paid before pinning existed.
    """
    if order.payment_status not in PAYABLE_PAYMENT_STATUSES:
        return []
    commission = order.commission or commission
    if commission is None:
        raise ConfigurationError(f"No commission recorded for {order.order_number}")

    lines = []
    for index, item in enumerate(order.items):
        if item.payout_status != "pending":
            continue
        gross = item.unit_price * item.quantity
        platform_fee, processing_fee, seller_net = split_line_amount(gross, commission)
        lines.append(PayoutLine(
            seller_id=item.seller_id,
            seller_name=item.seller_name,
            order_number=order.order_number,
            line_index=index,
            gross=gross,
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            seller_net=seller_net,
        ))
    return lines


class SellerTotals(BaseModel):
    seller_id: str
    seller_name: str
    lines: List[PayoutLine] = Field(default_factory=list)
    gross: int = 0
    platform_fees: int = 0
    processing_fees: int = 0
    net: int = 0

    def add(self, line: PayoutLine) -> None:
        self.lines.append(line)
        self.gross += line.gross
        self.platform_fees += line.platform_fee
        self.processing_fees += line.processing_fee
        self.net += line.seller_net


def aggregate_payouts(orders: Iterable[Order],
                      commission: Optional[CommissionSnapshot] = None) -> Dict[str, SellerTotals]:
    totals: Dict[str, SellerTotals] = {}
    for order in orders:
        for line in compute_payout(order, commission):
            seller = totals.get(line.seller_id)
            if seller is None:
                seller = totals[line.seller_id] = SellerTotals(seller_id=line.seller_id, seller_name=line.seller_name)
            seller.add(line)
    return totals


def summarize(payout: Payout) -> Payout:
    payout.gross_earnings = sum(line.gross for line in payout.lines)
    payout.platform_fees = sum(line.platform_fee for line in payout.lines)
    payout.processing_fees = sum(line.processing_fee for line in payout.lines)
    payout.net_earnings = sum(line.seller_net for line in payout.lines) + payout.adjustments
    return payout

# -----------------------------------------------------------------------------
# Batches
# -----------------------------------------------------------------------------

def _mark_included(order: Order, index: int, payout_id: str) -> None:
    item = order.items[index]
    if item.payout_status != "pending":
        raise ValidationError(f"Line {index} of {order.order_number} is {item.payout_status}")
    item.payout_status = "included"
    item.payout_id = payout_id


def apply_batch(orders: Dict[str, Order], payout: Payout, payout_id: str) -> Dict[str, Order]:
    """Mark every line of the batch included, all or nothing.

    Works on copies and returns them only when every line could be marked;
    the orders passed in are never modified.
    """
    staged = {number: order.model_copy(deep=True) for number, order in orders.items()}
    for line in payout.lines:
        order = staged.get(line.order_number)
        if order is None:
            raise NotFound(f"Order {line.order_number} not found")
        _mark_included(order, line.line_index, payout_id)
    return staged


def form_batch(orders: Iterable[Order], seller_id: str, commission: Optional[CommissionSnapshot] = None,
               adjustments: Iterable[PayoutAdjustment] = (), minimum: int = 0,
               payment_method: str = "bank_transfer") -> Payout:
    """Collect a seller's pending paid lines and open adjustments into a batch.

    The batch period spans the payment times of the orders it draws lines from.
    """
    orders = list(orders)
    totals = aggregate_payouts(orders, commission).get(seller_id)
    if totals is None or not totals.lines:
        raise ValidationError("No pending items to pay out")
    adjustments = list(adjustments)
    numbers = {line.order_number for line in totals.lines}
    paid_times = [as_utc(o.payment_details.paid_at) for o in orders
                  if o.order_number in numbers and o.payment_details.paid_at]
    payout = summarize(Payout(
        seller_id=seller_id,
        seller_name=totals.seller_name,
        lines=totals.lines,
        adjustments=sum(a.amount for a in adjustments),
        payment_method=payment_method,
        period_start=min(paid_times, default=None),
        period_end=max(paid_times, default=None),
    ))
    if payout.net_earnings < minimum:
        raise ValidationError(f"Minimum payout amount is {minimum}, current is {payout.net_earnings}")
    return payout


def payable_orders(database, hold_days: int = 0, seller_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> List[Order]:
    """Orders with pending lines whose payment is older than the hold period."""
    query = {"payment_status": {"$in": list(PAYABLE_PAYMENT_STATUSES)}}
    if seller_id:
        query["items"] = {"$elemMatch": {"seller_id": seller_id, "payout_status": "pending"}}
    else:
        query["items.payout_status"] = "pending"
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=hold_days)
    orders = []
    for doc in database["order"].find(query):
        order = order_from_doc(doc)
        paid_at = order.payment_details.paid_at
        if paid_at and as_utc(paid_at) > cutoff:
            continue
        orders.append(order)
    return orders


def create_payout_batch(database, seller_id: str, payment_method: str = "bank_transfer") -> Tuple[str, Payout]:
    """Issue a payout batch for one seller.

    The batch document, with its complete list of target lines, is written
    before any order is touched; `apply_payout_batch` then marks the lines and
    can be re-run until it finishes.
    """
    unapplied = database["payout"].find_one({"seller_id": seller_id, "applied": False})
    if unapplied:
        apply_payout_batch(database, str(unapplied["_id"]))

    snapshot, config = get_commission_config(database)
    orders = payable_orders(database, config.payout_hold_days, seller_id)
    adjustment_docs = list(database["payoutadjustment"].find({"seller_id": seller_id, "status": "pending"}))
    adjustments = [PayoutAdjustment(**{k: v for k, v in d.items() if k != "_id"}) for d in adjustment_docs]

    payout = form_batch(orders, seller_id, snapshot, adjustments,
                        minimum=config.minimum_payout_amount, payment_method=payment_method)
    payout.adjustment_ids = [str(d["_id"]) for d in adjustment_docs]
    # dry run on copies: fails before anything is written
    apply_batch({o.order_number: o for o in orders}, payout, "dry-run")

    payout_id = create_document(database, "payout", payout)
    apply_payout_batch(database, payout_id)
    logger.info("Payout %s for seller %s: %d lines, net %d", payout_id, seller_id,
                len(payout.lines), payout.net_earnings)
    return payout_id, payout


def apply_payout_batch(database, payout_id: str) -> None:
    """Mark the batch's lines included. Idempotent."""
    doc = database["payout"].find_one({"_id": ObjectId(payout_id)})
    if not doc:
        raise NotFound("Payout not found")
    if doc.get("applied"):
        return
    for line in doc.get("lines", []):
        prefix = f"items.{line['line_index']}"
        res = database["order"].update_one(
            {"order_number": line["order_number"], f"{prefix}.payout_status": "pending"},
            {"$set": {f"{prefix}.payout_status": "included", f"{prefix}.payout_id": payout_id}},
        )
        if res.matched_count == 0 and not database["order"].find_one(
                {"order_number": line["order_number"], f"{prefix}.payout_id": payout_id}):
            logger.warning("%s line %d left the payout flow before batch %s was applied",
                           line["order_number"], line["line_index"], payout_id)
            _remove_from_batch(database, payout_id, line["order_number"], line["line_index"])
    adjustment_ids = [ObjectId(a) for a in doc.get("adjustment_ids", [])]
    if adjustment_ids:
        database["payoutadjustment"].update_many(
            {"_id": {"$in": adjustment_ids}},
            {"$set": {"status": "applied", "payout_id": payout_id}},
        )
    database["payout"].update_one({"_id": doc["_id"]}, {"$set": {"applied": True}})


def resume_unapplied_batches(database) -> int:
    count = 0
    for doc in database["payout"].find({"applied": False}, {"_id": 1}):
        logger.warning("Resuming payout batch %s", doc["_id"])
        apply_payout_batch(database, str(doc["_id"]))
        count += 1
    return count


def update_payout_status(database, payout_id: str, status: str, transaction_id: Optional[str] = None,
                         failure_reason: Optional[str] = None, processed_by: Optional[str] = None) -> Payout:
    doc = database["payout"].find_one({"_id": ObjectId(payout_id)})
    if not doc:
        raise NotFound("Payout not found")
    payout = Payout(**{k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")})
    PAYOUT.check(payout.status, status)

    if status == "completed":
        _set_line_status(database, payout_id, "included", "paid")
        payout.processed_at = datetime.now(timezone.utc)
    elif status in ("failed", "cancelled"):
        _set_line_status(database, payout_id, "included", "pending", release=True)
        if payout.adjustment_ids:
            database["payoutadjustment"].update_many(
                {"_id": {"$in": [ObjectId(a) for a in payout.adjustment_ids]}},
                {"$set": {"status": "pending", "payout_id": None}},
            )
        payout.failure_reason = failure_reason
    logger.info("Payout %s -> %s by %s", payout_id, status, processed_by or "system")

    payout.status = status
    if transaction_id:
        payout.transaction_id = transaction_id
    if processed_by:
        payout.processed_by = processed_by
    database["payout"].update_one({"_id": doc["_id"]}, {"$set": {
        "status": payout.status,
        "transaction_id": payout.transaction_id,
        "processed_at": payout.processed_at,
        "failure_reason": payout.failure_reason,
        "processed_by": payout.processed_by,
        "updated_at": datetime.now(timezone.utc),
    }})
    return payout


def _set_line_status(database, payout_id: str, current: str, target: str, release: bool = False) -> None:
    doc = database["payout"].find_one({"_id": ObjectId(payout_id)})
    for line in doc.get("lines", []):
        prefix = f"items.{line['line_index']}"
        update = {f"{prefix}.payout_status": target}
        if release:
            update[f"{prefix}.payout_id"] = None
        database["order"].update_one(
            {"order_number": line["order_number"], f"{prefix}.payout_status": current,
             f"{prefix}.payout_id": payout_id},
            {"$set": update},
        )

# -----------------------------------------------------------------------------
# Refund reversal
# -----------------------------------------------------------------------------

def refund_line(order: Order, index: int,
                commission: Optional[CommissionSnapshot] = None) -> Tuple[str, Optional[PayoutAdjustment]]:
    """Take one line out of the payout flow.

    Returns the line's previous payout status and, for a line that was
    already paid out, the clawback to deduct from the seller's next batch.
    """
    if index < 0 or index >= len(order.items):
        raise NotFound(f"Line {index} not found on {order.order_number}")
    item = order.items[index]
    previous = item.payout_status
    if previous == "refunded":
        return previous, None
    if previous == "paid":
        commission = order.commission or commission
        if commission is None:
            raise ConfigurationError(f"No commission recorded for {order.order_number}")
        _, _, seller_net = split_line_amount(item.unit_price * item.quantity, commission)
        adjustment = PayoutAdjustment(
            seller_id=item.seller_id,
            order_number=order.order_number,
            line_index=index,
            amount=-seller_net,
        )
        return previous, adjustment
    item.payout_status = "refunded"
    return previous, None


def refund_order_line(database, order_number: str, index: int) -> Tuple[str, Optional[PayoutAdjustment]]:
    order = load_order(database, order_number)
    payout_id = order.items[index].payout_id if 0 <= index < len(order.items) else None
    previous, adjustment = refund_line(order, index)

    if previous == "included" and payout_id:
        _remove_from_batch(database, payout_id, order_number, index)
        order.items[index].payout_id = None
    if previous in ("pending", "included"):
        if not save_order(database, order, guard={f"items.{index}.payout_status": previous}):
            raise ValidationError(f"{order_number} changed while refunding, try again")
    if adjustment is not None:
        # one clawback per line
        if database["payoutadjustment"].find_one({"order_number": order_number, "line_index": index}):
            return previous, None
        create_document(database, "payoutadjustment", adjustment)
        logger.info("Clawback of %d recorded for seller %s", adjustment.amount, adjustment.seller_id)
    return previous, adjustment


def _remove_from_batch(database, payout_id: str, order_number: str, index: int) -> None:
    doc = database["payout"].find_one({"_id": ObjectId(payout_id)})
    if not doc:
        raise NotFound("Payout not found")
    if doc["status"] not in ("pending", "processing"):
        raise ValidationError(f"Payout {payout_id} is already {doc['status']}")
    payout = Payout(**{k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")})
    payout.lines = [l for l in payout.lines if not (l.order_number == order_number and l.line_index == index)]
    summarize(payout)
    database["payout"].update_one({"_id": doc["_id"]}, {"$set": {
        "lines": [l.model_dump() for l in payout.lines],
        "gross_earnings": payout.gross_earnings,
        "platform_fees": payout.platform_fees,
        "processing_fees": payout.processing_fees,
        "net_earnings": payout.net_earnings,
        "updated_at": datetime.now(timezone.utc),
    }})
    logger.info("Removed %s line %d from payout %s", order_number, index, payout_id)

# -----------------------------------------------------------------------------
# Seller earnings
# -----------------------------------------------------------------------------

def seller_earnings(orders: Iterable[Order], seller_id: str,
                    commission: Optional[CommissionSnapshot] = None) -> Dict[str, int]:
    earnings = {"total_sales": 0, "total_fees": 0, "pending": 0, "included": 0, "paid": 0, "refunded": 0}
    for order in orders:
        if order.payment_status not in ("paid", "partially_refunded", "refunded"):
            continue
        pinned = order.commission or commission
        for item in order.items:
            if item.seller_id != seller_id:
                continue
            gross = item.unit_price * item.quantity
            if pinned is None:
                raise ConfigurationError(f"No commission recorded for {order.order_number}")
            platform_fee, processing_fee, net = split_line_amount(gross, pinned)
            earnings[item.payout_status] += net
            if item.payout_status != "refunded":
                earnings["total_sales"] += gross
                earnings["total_fees"] += platform_fee + processing_fee
    return earnings
