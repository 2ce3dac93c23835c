from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

import payouts
from conftest import cart_line, paid_order
from errors import ConfigurationError, ValidationError
from orders import apply_refund, build_order, load_order
from payouts import (
    aggregate_payouts,
    apply_batch,
    compute_payout,
    create_payout_batch,
    form_batch,
    get_commission_config,
    payable_orders,
    refund_line,
    refund_order_line,
    resume_unapplied_batches,
    save_commission_config,
    seller_earnings,
    split_line_amount,
    update_payout_status,
    validate_commission_config,
)
from schemas import CommissionConfig, CommissionSnapshot


def store(mongo, order):
    mongo["order"].insert_one(order.model_dump())


@pytest.fixture
def no_minimum(mongo):
    save_commission_config(mongo, CommissionConfig(minimum_payout_amount=0, payout_hold_days=0))


def test_split_matches_published_example(commission):
    assert split_line_amount(100000, commission) == (12000, 2900, 85100)


@pytest.mark.parametrize("gross", [1, 7, 99, 333, 1001, 123457, 9999999])
@pytest.mark.parametrize("platform,processing", [(12, 2.9), (0, 0), (33.33, 3.33), (99, 0.99)])
def test_split_conserves_the_line_amount(gross, platform, processing):
    snapshot = CommissionSnapshot(version=1, platform_commission_pct=platform, payment_processing_fee_pct=processing)
    platform_fee, processing_fee, net = split_line_amount(gross, snapshot)
    assert platform_fee + processing_fee + net == gross
    assert net >= 0


def test_commission_over_100_rejected_at_save(mongo):
    with pytest.raises(ConfigurationError):
        save_commission_config(mongo, CommissionConfig(platform_commission_pct=60, payment_processing_fee_pct=45))
    assert mongo["settings"].count_documents({}) == 0


@pytest.mark.parametrize("platform,processing", [(100, 0), (-1, 2), (50, 50), (12, 100)])
def test_invalid_percentages(platform, processing):
    with pytest.raises(ConfigurationError):
        validate_commission_config(CommissionConfig(platform_commission_pct=platform,
                                                    payment_processing_fee_pct=processing))


def test_settings_are_versioned(mongo):
    first, _ = get_commission_config(mongo)
    assert first.version == 1
    assert first.platform_commission_pct == 12
    save_commission_config(mongo, CommissionConfig(platform_commission_pct=10, payment_processing_fee_pct=2))
    latest, config = get_commission_config(mongo)
    assert latest.version == 2
    assert config.platform_commission_pct == 10
    assert mongo["settings"].count_documents({}) == 2


def test_compute_payout_uses_commission_pinned_at_payment(commission):
    order = paid_order("ORD-000001", [cart_line(100000, 1)], commission)
    later = CommissionSnapshot(version=2, platform_commission_pct=30, payment_processing_fee_pct=5)
    [line] = compute_payout(order, later)
    assert (line.platform_fee, line.processing_fee, line.seller_net) == (12000, 2900, 85100)


def test_unpaid_orders_have_no_payout(commission):
    order = build_order([cart_line(1000, 1)], order_number="ORD-000001", user_id="b", payment_method="cod")
    assert compute_payout(order, commission) == []


def test_aggregate_groups_pending_lines_by_seller(commission):
    first = paid_order("ORD-000001", [cart_line(1000, 2, seller="s1"), cart_line(500, 1, seller="s2")], commission)
    second = paid_order("ORD-000002", [cart_line(3000, 1, seller="s1")], commission)
    second.items[0].payout_status = "paid"
    totals = aggregate_payouts([first, second])
    assert set(totals) == {"s1", "s2"}
    assert totals["s1"].gross == 2000
    assert len(totals["s1"].lines) == 1
    assert totals["s2"].net == 500 - 60 - 15


def test_apply_batch_is_all_or_nothing(commission, monkeypatch):
    orders = {
        n: paid_order(n, [cart_line(1000, 1), cart_line(2000, 1)], commission)
        for n in ("ORD-000001", "ORD-000002")
    }
    payout = form_batch(orders.values(), "s1")
    assert len(payout.lines) == 4

    calls = []
    real = payouts._mark_included

    def crash_on_third(order, index, payout_id):
        calls.append(index)
        if len(calls) == 3:
            raise RuntimeError("process died")
        real(order, index, payout_id)

    monkeypatch.setattr(payouts, "_mark_included", crash_on_third)
    with pytest.raises(RuntimeError):
        apply_batch(orders, payout, "p1")
    assert all(i.payout_status == "pending" for o in orders.values() for i in o.items)

    monkeypatch.setattr(payouts, "_mark_included", real)
    staged = apply_batch(orders, payout, "p1")
    assert all(i.payout_status == "included" for o in staged.values() for i in o.items)
    assert all(i.payout_status == "pending" for o in orders.values() for i in o.items)


def test_form_batch_respects_minimum(commission):
    order = paid_order("ORD-000001", [cart_line(1000, 1)], commission)
    with pytest.raises(ValidationError):
        form_batch([order], "s1", minimum=50000)
    with pytest.raises(ValidationError):
        form_batch([order], "nobody")


def test_refund_line_transitions(commission):
    order = paid_order("ORD-000001", [cart_line(100000, 1), cart_line(100, 1), cart_line(100, 1)], commission)
    order.items[1].payout_status = "included"
    order.items[2].payout_status = "paid"

    assert refund_line(order, 0) == ("pending", None)
    assert order.items[0].payout_status == "refunded"
    assert refund_line(order, 1) == ("included", None)
    assert order.items[1].payout_status == "refunded"

    previous, adjustment = refund_line(order, 2)
    assert previous == "paid"
    assert order.items[2].payout_status == "paid"
    assert adjustment.amount == -(100 - 12 - 3)
    assert refund_line(order, 0) == ("refunded", None)


def test_batch_lifecycle_in_mongo(mongo, commission, no_minimum):
    march = datetime(2026, 3, 1, 10, tzinfo=timezone.utc)
    store(mongo, paid_order("ORD-000001", [cart_line(100000, 1), cart_line(5000, 2, seller="s2")], commission,
                            when=march))
    store(mongo, paid_order("ORD-000002", [cart_line(20000, 1)], commission, when=march + timedelta(days=9)))
    store(mongo, paid_order("ORD-000003", [cart_line(700, 1, seller="s2")], commission,
                            when=march - timedelta(days=5)))

    payout_id, payout = create_payout_batch(mongo, "s1")
    assert payout.gross_earnings == 120000
    assert payout.net_earnings == 85100 + 17020
    assert (payout.period_start, payout.period_end) == (march, march + timedelta(days=9))
    order = load_order(mongo, "ORD-000001")
    assert [i.payout_status for i in order.items] == ["included", "pending"]
    assert order.items[0].payout_id == payout_id

    with pytest.raises(ValidationError):
        create_payout_batch(mongo, "s1")

    update_payout_status(mongo, payout_id, "processing")
    update_payout_status(mongo, payout_id, "completed", transaction_id="tx_1", processed_by="admin_1")
    assert load_order(mongo, "ORD-000002").items[0].payout_status == "paid"
    doc = mongo["payout"].find_one({"_id": ObjectId(payout_id)})
    assert (doc["transaction_id"], doc["processed_by"]) == ("tx_1", "admin_1")
    with pytest.raises(ValidationError):
        update_payout_status(mongo, payout_id, "failed")


def test_failed_batch_releases_lines(mongo, commission, no_minimum):
    store(mongo, paid_order("ORD-000001", [cart_line(1000, 1)], commission))
    payout_id, _ = create_payout_batch(mongo, "s1")
    update_payout_status(mongo, payout_id, "failed", failure_reason="bank rejected")
    item = load_order(mongo, "ORD-000001").items[0]
    assert item.payout_status == "pending"
    assert item.payout_id is None
    _, again = create_payout_batch(mongo, "s1")
    assert len(again.lines) == 1


def test_refund_of_included_line_leaves_the_batch(mongo, commission, no_minimum):
    store(mongo, paid_order("ORD-000001", [cart_line(1000, 1), cart_line(3000, 1)], commission))
    payout_id, payout = create_payout_batch(mongo, "s1")
    assert payout.gross_earnings == 4000

    previous, adjustment = refund_order_line(mongo, "ORD-000001", 1)
    assert (previous, adjustment) == ("included", None)
    item = load_order(mongo, "ORD-000001").items[1]
    assert item.payout_status == "refunded"
    assert item.payout_id is None

    doc = mongo["payout"].find_one({"_id": ObjectId(payout_id)})
    assert [line["line_index"] for line in doc["lines"]] == [0]
    assert doc["gross_earnings"] == 1000
    assert doc["net_earnings"] == 1000 - 120 - 29

    update_payout_status(mongo, payout_id, "completed")
    statuses = [i.payout_status for i in load_order(mongo, "ORD-000001").items]
    assert statuses == ["paid", "refunded"]


def test_refund_after_payout_claws_back_from_next_batch(mongo, commission, no_minimum):
    store(mongo, paid_order("ORD-000001", [cart_line(1000, 1)], commission))
    payout_id, _ = create_payout_batch(mongo, "s1")
    update_payout_status(mongo, payout_id, "completed")

    previous, adjustment = refund_order_line(mongo, "ORD-000001", 0)
    assert previous == "paid"
    assert adjustment.amount == -851
    assert refund_order_line(mongo, "ORD-000001", 0) == ("paid", None)

    store(mongo, paid_order("ORD-000002", [cart_line(5000, 1)], commission))
    _, payout = create_payout_batch(mongo, "s1")
    assert payout.adjustments == -851
    assert payout.net_earnings == 4255 - 851
    assert mongo["payoutadjustment"].find_one({})["status"] == "applied"


def test_unapplied_batch_is_resumed(mongo, commission, no_minimum):
    orders = [paid_order(n, [cart_line(1000, 1)], commission) for n in ("ORD-000001", "ORD-000002")]
    for order in orders:
        store(mongo, order)
    payout = form_batch(orders, "s1")
    doc = payout.model_dump()
    result = mongo["payout"].insert_one(doc)
    # crash after the first line was written
    mongo["order"].update_one(
        {"order_number": "ORD-000001"},
        {"$set": {"items.0.payout_status": "included", "items.0.payout_id": str(result.inserted_id)}},
    )

    assert resume_unapplied_batches(mongo) == 1
    assert all(load_order(mongo, n).items[0].payout_status == "included" for n in ("ORD-000001", "ORD-000002"))
    assert mongo["payout"].find_one({"_id": result.inserted_id})["applied"] is True
    assert resume_unapplied_batches(mongo) == 0


def test_seller_earnings(commission):
    order = paid_order("ORD-000001", [cart_line(100000, 1), cart_line(1000, 1)], commission)
    order.items[1].payout_status = "refunded"
    earnings = seller_earnings([order], "s1")
    assert earnings["total_sales"] == 100000
    assert earnings["total_fees"] == 14900
    assert earnings["pending"] == 85100
    assert earnings["refunded"] == 851


def test_hold_period_delays_payout(mongo, commission):
    save_commission_config(mongo, CommissionConfig(minimum_payout_amount=0, payout_hold_days=7))
    now = datetime.now(timezone.utc)
    store(mongo, paid_order("ORD-000001", [cart_line(1000, 1)], commission, when=now - timedelta(days=2)))
    with pytest.raises(ValidationError):
        create_payout_batch(mongo, "s1")

    store(mongo, paid_order("ORD-000002", [cart_line(3000, 1)], commission, when=now - timedelta(days=8)))
    _, payout = create_payout_batch(mongo, "s1")
    assert [line.order_number for line in payout.lines] == ["ORD-000002"]
    assert [o.order_number for o in payable_orders(mongo, 0)] == ["ORD-000001"]


def test_partially_refunded_order_stays_payable(mongo, commission, no_minimum):
    order = paid_order("ORD-000001", [cart_line(1000, 1), cart_line(500, 1, seller="s2")], commission)
    apply_refund(order, "rfnd_1", 500, "processed")
    assert order.payment_status == "partially_refunded"
    store(mongo, order)

    assert len(compute_payout(order)) == 2
    assert seller_earnings([order], "s1")["pending"] == 851
    _, payout = create_payout_batch(mongo, "s1")
    assert payout.net_earnings == 851
    assert seller_earnings([load_order(mongo, "ORD-000001")], "s1")["included"] == 851
