import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app
from orders import CartLine, apply_payment_captured, build_order
from schemas import CommissionSnapshot


@pytest.fixture
def mongo():
    db = mongomock.MongoClient().db
    ensure_indexes(db)
    return db


@pytest.fixture
def client(mongo):
    app.dependency_overrides[get_db] = lambda: mongo
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def commission():
    return CommissionSnapshot(version=1, platform_commission_pct=12, payment_processing_fee_pct=2.9)


def cart_line(unit_price=1000, quantity=1, seller="s1", item_type="product", name="Print"):
    return CartLine(
        item_type=item_type,
        item_id=f"{name.lower()}-id",
        seller_id=seller,
        seller_name=f"Studio {seller}",
        name=name,
        unit_price=unit_price,
        quantity=quantity,
    )


def paid_order(number, lines, commission, payment_id=None, when=None):
    order = build_order(lines, order_number=number, user_id="buyer", payment_method="razorpay")
    apply_payment_captured(order, payment_id or f"pay_{number}", order.total, "INR", "card", commission, when)
    return order
