import os
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

import database
from database import create_document, ensure_indexes, get_db, get_documents
from catalog import (
    COURSE_STATUS,
    PRODUCT_STATUS,
    WORKSHOP_STATUS,
    moderate,
    product_availability,
    recompute_course_aggregates,
    replace_curriculum,
    reserve_order_seats,
    seats_left,
    variant_availability,
)
from errors import MarketplaceError, NotFound, PermissionDenied, ValidationError
from orders import CartLine, build_order, insert_order, load_order, order_from_doc, save_order, set_status
from payouts import (
    aggregate_payouts,
    create_payout_batch,
    get_commission_config,
    payable_orders,
    refund_order_line,
    resume_unapplied_batches,
    save_commission_config,
    seller_earnings,
    update_payout_status,
)
from permissions import (
    APPROVE_COURSES,
    APPROVE_PRODUCTS,
    APPROVE_WORKSHOPS,
    MANAGE_FINANCE,
    MANAGE_MARKETING,
    MANAGE_ORDERS,
    MANAGE_SETTINGS,
    REFUND_ORDERS,
    VERIFY_USERS,
    has_admin_permission,
    require_admin,
    require_verified_studio,
)
from pricing import format_amount, price_product_line
from promotions import PromoValidator, TaxResolver, promo_discount
from schemas import (
    AddOn,
    CommissionConfig,
    Course,
    Customization,
    ItemType,
    Location,
    PaymentMethod,
    Product,
    PromoCode,
    Section,
    ShippingAddress,
    TaxRate,
    User,
    Variant,
    Workshop,
)
from webhooks import handle_event, verify_signature

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("marketplace")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL not set, running without a database")
    else:
        ensure_indexes(database.db)
        resumed = resume_unapplied_batches(database.db)
        if resumed:
            logger.warning("Resumed %d unapplied payout batches", resumed)
    yield


app = FastAPI(title="Marketplace Settlement API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------------

def to_str_id(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id"):
        doc["id"] = str(doc.pop("_id"))
    return doc


def strip_meta(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")}


def _utcnow():
    return datetime.now(timezone.utc)


def find_by_id(db, collection: str, doc_id: str, label: str) -> dict:
    if not ObjectId.is_valid(doc_id):
        raise HTTPException(status_code=400, detail=f"Invalid {label} id")
    doc = db[collection].find_one({"_id": ObjectId(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return doc


class CurrentUser(User):
    id: str


def current_user(x_user_id: Optional[str] = Header(None), db=Depends(get_db)) -> Optional[CurrentUser]:
    """The acting user, identified by the X-User-Id header set by the auth proxy."""
    if not x_user_id or not ObjectId.is_valid(x_user_id):
        return None
    doc = db["user"].find_one({"_id": ObjectId(x_user_id)})
    if not doc:
        return None
    return CurrentUser(id=str(doc["_id"]), **strip_meta(doc))


def signed_in(user: Optional[CurrentUser] = Depends(current_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

# ---------------------------------------------------------------------------------
# Health and info
# ---------------------------------------------------------------------------------
@app.get("/")
def read_root():
    return {"message": "Marketplace Settlement Backend Ready"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"

    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response

# ---------------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------------
@app.post("/api/users")
def create_user(payload: User, db=Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already exists")
    user_id = create_document(db, "user", payload)
    return to_str_id(db["user"].find_one({"_id": ObjectId(user_id)}))


@app.get("/api/users/{user_id}")
def get_user(user_id: str, db=Depends(get_db)):
    return to_str_id(find_by_id(db, "user", user_id, "user"))


@app.post("/api/users/me/kyc")
def submit_kyc(user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    if user.role != "studio":
        raise PermissionDenied("Only studios go through verification")
    if user.kyc.status == "approved":
        raise ValidationError("Already verified")
    db["user"].update_one({"_id": ObjectId(user.id)}, {"$set": {
        "kyc.status": "pending", "kyc.submitted_at": _utcnow(), "kyc.rejection_reason": None,
    }})
    return {"status": "pending"}


class KycDecision(BaseModel):
    status: Literal["approved", "rejected"]
    reason: Optional[str] = None


@app.put("/api/admin/users/{user_id}/kyc")
def review_kyc(user_id: str, payload: KycDecision, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, VERIFY_USERS)
    doc = find_by_id(db, "user", user_id, "user")
    if doc.get("kyc", {}).get("status") != "pending":
        raise ValidationError("No verification request pending")
    if payload.status == "rejected" and not payload.reason:
        raise ValidationError("A rejection needs a reason")
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {
        "kyc.status": payload.status, "kyc.reviewed_at": _utcnow(), "kyc.rejection_reason": payload.reason,
    }})
    logger.info("KYC for %s %s by %s", user_id, payload.status, admin.id)
    return {"status": payload.status}

# ---------------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------------
class ProductIn(BaseModel):
    name: str
    description: Optional[str] = None
    product_type: Literal["physical", "digital", "service"] = "physical"
    price: int = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    has_variants: bool = False
    variants: List[Variant] = Field(default_factory=list)
    customizations: List[Customization] = Field(default_factory=list)
    add_ons: List[AddOn] = Field(default_factory=list)


def load_product(db, product_id: str) -> Product:
    return Product(**strip_meta(find_by_id(db, "product", product_id, "product")))


@app.post("/api/products")
def create_product(payload: ProductIn, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    if user.role != "studio":
        raise PermissionDenied("Only studios can sell products")
    if payload.has_variants and not payload.variants:
        raise ValidationError("Add at least one variant")
    product = Product(seller_id=user.id, seller_name=user.name, **payload.model_dump())
    product_id = create_document(db, "product", product)
    return {"id": product_id, "status": product.status}


@app.get("/api/products")
def list_products(status: Optional[str] = None, seller_id: Optional[str] = None, db=Depends(get_db)):
    query = {}
    if status:
        query["status"] = status
    if seller_id:
        query["seller_id"] = seller_id
    return [to_str_id(d) for d in get_documents(db, "product", query)]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    doc = find_by_id(db, "product", product_id, "product")
    result = to_str_id(doc)
    result["available"] = product_availability(Product(**strip_meta(doc)))
    return result


class LineSelection(BaseModel):
    variant_id: Optional[str] = None
    customizations: Dict[str, str] = Field(default_factory=dict)
    add_on_ids: List[str] = Field(default_factory=list)
    quantity: int = 1


@app.post("/api/products/{product_id}/quote")
def quote_product(product_id: str, payload: LineSelection, db=Depends(get_db)):
    product = load_product(db, product_id)
    unit_price = price_product_line(product, payload.variant_id, payload.customizations, payload.add_on_ids)
    return {
        "unit_price": unit_price,
        "line_total": unit_price * payload.quantity,
        "display": format_amount(unit_price * payload.quantity, DEFAULT_CURRENCY),
    }


class ModerationIn(BaseModel):
    status: str
    reason: Optional[str] = None


def _moderate(db, collection: str, doc_id: str, model, machine, target: str, reason: Optional[str] = None):
    doc = find_by_id(db, collection, doc_id, collection)
    listing = moderate(model(**strip_meta(doc)), machine, target, reason)
    res = db[collection].update_one(
        {"_id": doc["_id"], "status": doc["status"]},
        {"$set": {"status": listing.status, "rejection_reason": listing.rejection_reason, "updated_at": _utcnow()}},
    )
    if res.matched_count == 0:
        raise ValidationError(f"The {collection} changed meanwhile, try again")
    logger.info("%s %s: %s -> %s", collection, doc_id, doc["status"], listing.status)
    return {"id": doc_id, "status": listing.status, "rejection_reason": listing.rejection_reason}


@app.post("/api/products/{product_id}/submit")
def submit_product(product_id: str, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_verified_studio(user)
    if load_product(db, product_id).seller_id != user.id:
        raise PermissionDenied("Not your product")
    return _moderate(db, "product", product_id, Product, PRODUCT_STATUS, "pending")


@app.post("/api/admin/products/{product_id}/moderate")
def moderate_product(product_id: str, payload: ModerationIn, admin: CurrentUser = Depends(signed_in),
                     db=Depends(get_db)):
    require_admin(admin, APPROVE_PRODUCTS)
    return _moderate(db, "product", product_id, Product, PRODUCT_STATUS, payload.status, payload.reason)

# ---------------------------------------------------------------------------------
# Courses
# ---------------------------------------------------------------------------------
class CourseIn(BaseModel):
    title: str
    subtitle: Optional[str] = None
    description: Optional[str] = None
    price: int = Field(..., ge=0)
    sections: List[Section] = Field(default_factory=list)


@app.post("/api/courses")
def create_course(payload: CourseIn, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_verified_studio(user)
    course = Course(instructor_id=user.id, instructor_name=user.name, **payload.model_dump(exclude={"sections"}))
    replace_curriculum(course, payload.sections)
    course_id = create_document(db, "course", course)
    return {"id": course_id, "total_lectures": course.total_lectures, "total_duration": course.total_duration}


@app.get("/api/courses/{course_id}")
def get_course(course_id: str, db=Depends(get_db)):
    return to_str_id(find_by_id(db, "course", course_id, "course"))


@app.put("/api/courses/{course_id}/curriculum")
def update_curriculum(course_id: str, sections: List[Section], user: CurrentUser = Depends(signed_in),
                      db=Depends(get_db)):
    doc = find_by_id(db, "course", course_id, "course")
    course = Course(**strip_meta(doc))
    if course.instructor_id != user.id:
        raise PermissionDenied("Not your course")
    replace_curriculum(course, sections)
    db["course"].update_one({"_id": doc["_id"]}, {"$set": {
        "sections": [s.model_dump() for s in course.sections],
        "total_lectures": course.total_lectures,
        "total_duration": course.total_duration,
        "updated_at": _utcnow(),
    }})
    return {"total_lectures": course.total_lectures, "total_duration": course.total_duration}


@app.post("/api/courses/{course_id}/submit")
def submit_course(course_id: str, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_verified_studio(user)
    course = Course(**strip_meta(find_by_id(db, "course", course_id, "course")))
    if course.instructor_id != user.id:
        raise PermissionDenied("Not your course")
    if recompute_course_aggregates(course).total_lectures == 0:
        raise ValidationError("Add at least one lesson before submitting")
    return _moderate(db, "course", course_id, Course, COURSE_STATUS, "pending")


@app.post("/api/admin/courses/{course_id}/moderate")
def moderate_course(course_id: str, payload: ModerationIn, admin: CurrentUser = Depends(signed_in),
                    db=Depends(get_db)):
    require_admin(admin, APPROVE_COURSES)
    return _moderate(db, "course", course_id, Course, COURSE_STATUS, payload.status, payload.reason)

# ---------------------------------------------------------------------------------
# Workshops
# ---------------------------------------------------------------------------------
class WorkshopIn(BaseModel):
    title: str
    description: Optional[str] = None
    price: int = Field(..., ge=0)
    starts_at: datetime
    workshop_type: Literal["online", "offline"] = "online"
    location: Optional[Location] = None
    meeting_url: Optional[str] = None
    capacity: int = Field(..., ge=1)


@app.post("/api/workshops")
def create_workshop(payload: WorkshopIn, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_verified_studio(user)
    try:
        workshop = Workshop(host_id=user.id, host_name=user.name, **payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    workshop_id = create_document(db, "workshop", workshop)
    return {"id": workshop_id, "status": workshop.status}


@app.get("/api/workshops/{workshop_id}")
def get_workshop(workshop_id: str, db=Depends(get_db)):
    doc = find_by_id(db, "workshop", workshop_id, "workshop")
    result = to_str_id(doc)
    result["seats_left"] = seats_left(Workshop(**strip_meta(doc)))
    return result


@app.post("/api/workshops/{workshop_id}/submit")
def submit_workshop(workshop_id: str, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_verified_studio(user)
    if find_by_id(db, "workshop", workshop_id, "workshop").get("host_id") != user.id:
        raise PermissionDenied("Not your workshop")
    return _moderate(db, "workshop", workshop_id, Workshop, WORKSHOP_STATUS, "pending")


@app.post("/api/admin/workshops/{workshop_id}/moderate")
def moderate_workshop(workshop_id: str, payload: ModerationIn, admin: CurrentUser = Depends(signed_in),
                      db=Depends(get_db)):
    require_admin(admin, APPROVE_WORKSHOPS)
    return _moderate(db, "workshop", workshop_id, Workshop, WORKSHOP_STATUS, payload.status, payload.reason)

# ---------------------------------------------------------------------------------
# Promo codes, tax rates and commission settings
# ---------------------------------------------------------------------------------
@app.post("/api/admin/promo-codes")
def create_promo_code(payload: PromoCode, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_MARKETING)
    payload.code = payload.code.upper()
    if payload.end_date <= payload.start_date:
        raise ValidationError("End date must be after start date")
    try:
        promo_id = create_document(db, "promocode", payload)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Promo code already exists")
    return {"id": promo_id, "code": payload.code}


@app.post("/api/admin/tax-rates")
def create_tax_rate(payload: TaxRate, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_SETTINGS)
    payload.country = payload.country.upper()
    payload.region = payload.region.upper() if payload.region else None
    return {"id": create_document(db, "taxrate", payload)}


@app.get("/api/admin/tax-rates")
def list_tax_rates(admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_SETTINGS)
    return [to_str_id(d) for d in get_documents(db, "taxrate")]


@app.get("/api/admin/settings/commission")
def read_commission(admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_SETTINGS)
    snapshot, config = get_commission_config(db)
    return {"version": snapshot.version, **config.model_dump()}


@app.put("/api/admin/settings/commission")
def write_commission(payload: CommissionConfig, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_SETTINGS)
    snapshot = save_commission_config(db, payload)
    return {"version": snapshot.version, **payload.model_dump()}

# ---------------------------------------------------------------------------------
# Checkout and orders
# ---------------------------------------------------------------------------------
class CheckoutLine(LineSelection):
    item_type: ItemType
    item_id: str


class CheckoutRequest(BaseModel):
    items: List[CheckoutLine]
    payment_method: PaymentMethod = "razorpay"
    promo_code: Optional[str] = None
    shipping: int = Field(0, ge=0)
    shipping_address: Optional[ShippingAddress] = None


def price_cart_line(db, line: CheckoutLine) -> CartLine:
    """Price one requested line against the live catalog."""
    if line.quantity <= 0:
        raise ValidationError("Quantity must be at least 1")
    if line.item_type == "product":
        product = load_product(db, line.item_id)
        if product.status != "active":
            raise ValidationError(f"{product.name} is not available")
        if variant_availability(product, line.variant_id) < line.quantity:
            raise ValidationError(f"Not enough stock for {product.name}")
        unit_price = price_product_line(product, line.variant_id, line.customizations, line.add_on_ids)
        return CartLine(item_type="product", item_id=line.item_id, seller_id=product.seller_id,
                        seller_name=product.seller_name, name=product.name, unit_price=unit_price,
                        quantity=line.quantity)
    if line.item_type == "course":
        course = Course(**strip_meta(find_by_id(db, "course", line.item_id, "course")))
        if course.status != "published":
            raise ValidationError(f"{course.title} is not available")
        return CartLine(item_type="course", item_id=line.item_id, seller_id=course.instructor_id,
                        seller_name=course.instructor_name, name=course.title, unit_price=course.price,
                        quantity=line.quantity)
    workshop = Workshop(**strip_meta(find_by_id(db, "workshop", line.item_id, "workshop")))
    if workshop.status != "upcoming":
        raise ValidationError(f"{workshop.title} is not open for booking")
    if seats_left(workshop) < line.quantity:
        raise ValidationError(f"Only {seats_left(workshop)} seats left for {workshop.title}")
    return CartLine(item_type="workshop", item_id=line.item_id, seller_id=workshop.host_id,
                    seller_name=workshop.host_name, name=workshop.title, unit_price=workshop.price,
                    quantity=line.quantity)


class PromoCheck(BaseModel):
    code: str
    items: List[CheckoutLine]


@app.post("/api/promo-codes/validate")
def validate_promo_code(payload: PromoCheck, db=Depends(get_db)):
    lines = [price_cart_line(db, line) for line in payload.items]
    promo = PromoValidator(db).find(payload.code)
    return {"code": promo.code, "discount": promo_discount(promo, lines)}


@app.post("/api/orders")
def checkout(payload: CheckoutRequest, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    if not payload.items:
        raise ValidationError("Cart is empty")
    lines = [price_cart_line(db, line) for line in payload.items]
    promos = PromoValidator(db)

    def build(order_number: str):
        order = build_order(
            lines,
            order_number=order_number,
            user_id=user.id,
            payment_method=payload.payment_method,
            promo_code=payload.promo_code,
            promo_validator=promos,
            tax_resolver=TaxResolver(db),
            shipping=payload.shipping,
            shipping_address=payload.shipping_address,
            currency=DEFAULT_CURRENCY,
        )
        order.payment_details.gateway_order_id = order_number
        return order

    order = insert_order(db, build)
    if order.promo_code:
        promos.redeem(order.promo_code)
    return order.model_dump()


@app.get("/api/orders")
def list_my_orders(user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    docs = db["order"].find({"user_id": user.id}).sort("created_at", -1)
    return [order_from_doc(d).model_dump() for d in docs]


@app.get("/api/orders/{order_number}")
def get_order(order_number: str, user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    order = load_order(db, order_number)
    if order.user_id != user.id and not has_admin_permission(user, MANAGE_ORDERS):
        raise NotFound("Order not found")
    return order.model_dump()


class StatusUpdate(BaseModel):
    status: Literal["confirmed", "processing", "shipped", "delivered", "cancelled"]
    message: Optional[str] = None


@app.patch("/api/admin/orders/{order_number}/status")
def update_order_status(order_number: str, payload: StatusUpdate, admin: CurrentUser = Depends(signed_in),
                        db=Depends(get_db)):
    require_admin(admin, MANAGE_ORDERS)
    order = load_order(db, order_number)
    previous = order.status
    set_status(order, payload.status, payload.message)
    if not save_order(db, order, guard={"status": previous}):
        raise ValidationError("Order changed meanwhile, try again")
    return order.model_dump()


@app.post("/api/admin/orders/{order_number}/items/{index}/refund")
def refund_item(order_number: str, index: int, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, REFUND_ORDERS)
    previous, adjustment = refund_order_line(db, order_number, index)
    return {
        "previous_payout_status": previous,
        "clawback": adjustment.amount if adjustment else 0,
    }


@app.post("/api/admin/orders/{order_number}/reserve-seats")
def retry_seat_reservation(order_number: str, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_ORDERS)
    if load_order(db, order_number).payment_status != "paid":
        raise ValidationError("Only paid orders hold seats")
    failed = reserve_order_seats(db, order_number)
    return {"order_number": order_number, "unseated_lines": failed}


@app.post("/api/webhooks/razorpay")
async def razorpay_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(None),
                           db=Depends(get_db)):
    body = await request.body()
    verify_signature(body, x_razorpay_signature)
    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    changed = handle_event(db, event)
    return {"received": True, "applied": changed}

# ---------------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------------
@app.get("/api/admin/payouts/pending")
def pending_payouts(admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_FINANCE)
    snapshot, config = get_commission_config(db)
    totals = aggregate_payouts(payable_orders(db, config.payout_hold_days), snapshot)
    return [
        {
            "seller_id": t.seller_id,
            "seller_name": t.seller_name,
            "lines": len(t.lines),
            "gross": t.gross,
            "platform_fees": t.platform_fees,
            "processing_fees": t.processing_fees,
            "net": t.net,
        }
        for t in totals.values()
    ]


class PayoutRequest(BaseModel):
    seller_id: str
    payment_method: Literal["bank_transfer", "paypal", "razorpay_payout", "manual"] = "bank_transfer"


@app.post("/api/admin/payouts")
def create_payout(payload: PayoutRequest, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_FINANCE)
    payout_id, payout = create_payout_batch(db, payload.seller_id, payload.payment_method)
    return {"id": payout_id, **payout.model_dump()}


@app.get("/api/admin/payouts")
def list_payouts(status: Optional[str] = None, admin: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    require_admin(admin, MANAGE_FINANCE)
    query = {"status": status} if status and status != "all" else {}
    docs = db["payout"].find(query).sort("created_at", -1)
    return [to_str_id(d) for d in docs]


class PayoutUpdate(BaseModel):
    status: Literal["processing", "completed", "failed", "cancelled"]
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@app.patch("/api/admin/payouts/{payout_id}")
def update_payout(payout_id: str, payload: PayoutUpdate, admin: CurrentUser = Depends(signed_in),
                  db=Depends(get_db)):
    require_admin(admin, MANAGE_FINANCE)
    if not ObjectId.is_valid(payout_id):
        raise HTTPException(status_code=400, detail="Invalid payout id")
    payout = update_payout_status(db, payout_id, payload.status, payload.transaction_id, payload.failure_reason,
                                  processed_by=admin.id)
    return {"id": payout_id, **payout.model_dump()}


@app.get("/api/studio/earnings")
def studio_earnings(user: CurrentUser = Depends(signed_in), db=Depends(get_db)):
    if user.role != "studio":
        raise PermissionDenied("Only studios have earnings")
    snapshot, _ = get_commission_config(db)
    docs = db["order"].find({"items.seller_id": user.id})
    return seller_earnings((order_from_doc(d) for d in docs), user.id, snapshot)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
