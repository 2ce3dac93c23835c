import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pydantic
import pytest

from conftest import cart_line
from errors import ValidationError
from orders import (
    FULFILLMENT,
    PAYMENT,
    apply_payment_captured,
    apply_payment_failed,
    apply_refund,
    build_order,
    format_order_number,
    insert_order,
    load_order,
    set_status,
)
from schemas import Order


def make_order(lines=None, **kwargs):
    kwargs.setdefault("order_number", "ORD-000001")
    kwargs.setdefault("user_id", "buyer")
    kwargs.setdefault("payment_method", "razorpay")
    return build_order(lines or [cart_line(1000, 2)], **kwargs)


def test_totals_with_promo_shipping_and_tax():
    lines = [cart_line(50, 2), cart_line(100, 1, seller="s2", name="Course", item_type="course")]
    order = make_order(
        lines,
        promo_code="spring",
        promo_validator=lambda code, cart, subtotal: 20,
        tax_resolver=lambda address, cart, shipping: 18,
        shipping=10,
    )
    assert order.subtotal == 200
    assert order.discount == 20
    assert order.total == 208
    assert order.promo_code == "SPRING"
    assert [i.line_total for i in order.items] == [100, 100]


def test_seller_is_snapshotted_per_line():
    order = make_order([cart_line(10, 1, seller="s1"), cart_line(20, 1, seller="s2")])
    assert [(i.seller_id, i.seller_name) for i in order.items] == [("s1", "Studio s1"), ("s2", "Studio s2")]
    assert all(i.payout_status == "pending" for i in order.items)


def test_empty_cart_rejected():
    with pytest.raises(ValidationError):
        build_order([], order_number="ORD-000001", user_id="u", payment_method="cod")


@pytest.mark.parametrize("quantity", [0, -1])
def test_non_positive_quantity_rejected(quantity):
    with pytest.raises(ValidationError):
        make_order([cart_line(10, quantity)])


def test_discount_never_exceeds_subtotal():
    order = make_order([cart_line(100, 1)], promo_code="BIG", promo_validator=lambda *a: 500)
    assert order.discount == 100
    assert order.total == 0


def test_promo_without_validator_rejected():
    with pytest.raises(ValidationError):
        make_order(promo_code="FREE")


def test_order_refuses_inconsistent_total():
    order = make_order()
    data = order.model_dump()
    data["total"] += 1
    with pytest.raises(pydantic.ValidationError):
        Order(**data)


def test_fulfillment_transitions_append_tracking():
    order = make_order()
    assert [e.status for e in order.tracking_history] == ["pending"]
    with pytest.raises(ValidationError):
        set_status(order, "shipped")
    set_status(order, "confirmed")
    set_status(order, "shipped", "Sent with courier")
    set_status(order, "delivered")
    assert [e.status for e in order.tracking_history] == ["pending", "confirmed", "shipped", "delivered"]
    assert order.tracking_history[2].message == "Sent with courier"


def test_payment_and_fulfillment_machines_are_separate():
    assert PAYMENT.can("pending", "paid")
    assert not PAYMENT.can("pending", "shipped")
    assert FULFILLMENT.can("confirmed", "shipped")
    assert not FULFILLMENT.can("pending", "paid")
    assert not PAYMENT.can("refunded", "paid")


def test_duplicate_capture_applies_once(commission):
    order = make_order()
    when = datetime(2026, 1, 5, tzinfo=timezone.utc)
    assert apply_payment_captured(order, "pay_1", order.total, "INR", "card", commission, when)
    snapshot = order.model_dump()
    assert not apply_payment_captured(order, "pay_1", order.total, "INR", "card", commission)
    assert order.model_dump() == snapshot
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.processed_payment_events == ["captured:pay_1"]
    assert order.commission == commission


def test_failed_then_paid(commission):
    order = make_order()
    assert apply_payment_failed(order, "pay_1", "card declined")
    assert order.payment_status == "failed"
    assert apply_payment_captured(order, "pay_2", order.total, "INR", "upi", commission)
    assert order.payment_status == "paid"
    assert order.payment_details.failure_reason is None


def test_partial_then_full_refund(commission):
    order = make_order([cart_line(1000, 1)])
    apply_payment_captured(order, "pay_1", 1000, "INR", "card", commission)
    assert apply_refund(order, "rfnd_1", 400, "processed")
    assert order.payment_status == "partially_refunded"
    assert not apply_refund(order, "rfnd_1", 400, "processed")
    assert apply_refund(order, "rfnd_2", 600, "processed")
    assert order.payment_status == "refunded"
    assert order.refund_details.amount == 1000
    assert order.status == "refunded"


def test_refund_over_total_rejected(commission):
    order = make_order([cart_line(1000, 1)])
    apply_payment_captured(order, "pay_1", 1000, "INR", "card", commission)
    with pytest.raises(ValidationError):
        apply_refund(order, "rfnd_1", 1500, "processed")


def test_order_numbers_come_from_counter(mongo):
    first = insert_order(mongo, lambda n: make_order(order_number=n))
    second = insert_order(mongo, lambda n: make_order(order_number=n))
    assert (first.order_number, second.order_number) == ("ORD-000001", "ORD-000002")
    assert load_order(mongo, "ORD-000002").total == second.total


def test_taken_order_number_is_retried(mongo):
    mongo["order"].insert_one({"order_number": "ORD-000001"})
    order = insert_order(mongo, lambda n: make_order(order_number=n))
    assert order.order_number == "ORD-000002"
    assert mongo["order"].count_documents({}) == 2


def test_interleaved_allocations_are_distinct(mongo):
    inner = []

    def build_outer(number):
        # a second checkout allocates and inserts before this one is stored
        inner.append(insert_order(mongo, lambda n: make_order(order_number=n)))
        return make_order(order_number=number)

    outer = insert_order(mongo, build_outer)
    assert (outer.order_number, inner[0].order_number) == ("ORD-000001", "ORD-000002")
    assert mongo["order"].count_documents({}) == 2


class LockedCollection:
    """Serializes every call, like a server applying one operation at a time."""

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def locked(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)
        return locked


class LockedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.Lock()

    def __getitem__(self, name):
        return LockedCollection(self._db[name], self._lock)


def test_concurrent_checkouts_get_distinct_numbers(mongo):
    shared = LockedDatabase(mongo)
    with ThreadPoolExecutor(max_workers=8) as pool:
        orders = list(pool.map(lambda _: insert_order(shared, lambda n: make_order(order_number=n)), range(40)))
    numbers = {o.order_number for o in orders}
    assert len(numbers) == 40
    assert numbers == {format_order_number(i) for i in range(1, 41)}
    assert mongo["order"].count_documents({}) == 40
