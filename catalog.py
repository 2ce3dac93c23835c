"""
Catalog rules: product availability and moderation, course curriculum
aggregates, workshop enrollment.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId

from errors import MarketplaceError, NotFound, ValidationError
from orders import StatusMachine, load_order
from schemas import Course, Product, Section, TrackingEvent, Workshop

logger = logging.getLogger(__name__)

PRODUCT_STATUS = StatusMachine("product status", {
    "draft": frozenset({"pending", "archived"}),
    "pending": frozenset({"active", "rejected", "draft"}),
    "rejected": frozenset({"pending", "draft", "archived"}),
    "active": frozenset({"sold", "archived", "draft"}),
    "sold": frozenset({"archived", "active"}),
    "archived": frozenset({"draft"}),
})

COURSE_STATUS = StatusMachine("course status", {
    "draft": frozenset({"pending", "archived"}),
    "pending": frozenset({"published", "rejected", "draft"}),
    "rejected": frozenset({"pending", "draft", "archived"}),
    "published": frozenset({"archived", "blocked"}),
    "blocked": frozenset({"published", "archived"}),
    "archived": frozenset({"draft"}),
})

WORKSHOP_STATUS = StatusMachine("workshop status", {
    "draft": frozenset({"pending", "cancelled"}),
    "pending": frozenset({"upcoming", "rejected", "draft"}),
    "rejected": frozenset({"pending", "draft"}),
    "upcoming": frozenset({"completed", "cancelled", "blocked"}),
    "blocked": frozenset({"upcoming", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
})


def moderate(listing, machine: StatusMachine, target: str, reason: Optional[str] = None):
    """Move a product, course or workshop to a new status.

    A rejection carries a reason that is shown to the seller.
    """
    machine.check(listing.status, target)
    if target == "rejected":
        if not reason:
            raise ValidationError("A rejection needs a reason")
        listing.rejection_reason = reason
    elif target == "pending":
        listing.rejection_reason = None
    listing.status = target
    return listing

# -----------------------------------------------------------------------------
# Products
# -----------------------------------------------------------------------------

def product_availability(product: Product) -> int:
    if product.has_variants:
        return max((v.stock for v in product.variants), default=0)
    return product.quantity


def variant_availability(product: Product, variant_id: Optional[str]) -> int:
    if not product.has_variants:
        return product.quantity
    for variant in product.variants:
        if variant.id == variant_id:
            return variant.stock
    return 0

# -----------------------------------------------------------------------------
# Courses
# -----------------------------------------------------------------------------

def recompute_course_aggregates(course: Course) -> Course:
    """Derive total_lectures and total_duration from the curriculum tree.

    Call after every change to sections or lessons.
    """
    course.total_lectures = sum(len(section.lessons) for section in course.sections)
    course.total_duration = sum(
        lesson.duration
        for section in course.sections
        for lesson in section.lessons
        if lesson.type == "video"
    )
    return course


def replace_curriculum(course: Course, sections: List[Section]) -> Course:
    ordered = sorted(sections, key=lambda s: s.order)
    for section in ordered:
        section.lessons.sort(key=lambda lesson: lesson.order)
    course.sections = ordered
    return recompute_course_aggregates(course)

# -----------------------------------------------------------------------------
# Workshops
# -----------------------------------------------------------------------------

def enroll(database, workshop_id: str, seats: int = 1) -> int:
    """Reserve seats; the guarded $inc never takes enrolled_count past capacity."""
    if seats < 1:
        raise ValidationError("Enroll at least one seat")
    doc = database["workshop"].find_one({"_id": ObjectId(workshop_id)}, {"capacity": 1})
    if not doc:
        raise NotFound("Workshop not found")
    res = database["workshop"].update_one(
        {"_id": ObjectId(workshop_id), "enrolled_count": {"$lte": doc["capacity"] - seats}},
        {"$inc": {"enrolled_count": seats}},
    )
    if res.modified_count == 0:
        raise ValidationError("Workshop is full")
    updated = database["workshop"].find_one({"_id": ObjectId(workshop_id)}, {"enrolled_count": 1})
    logger.info("Workshop %s enrolled %d seat(s), now %d", workshop_id, seats, updated["enrolled_count"])
    return updated["enrolled_count"]


def seats_left(workshop: Workshop) -> int:
    return workshop.capacity - workshop.enrolled_count


def reserve_order_seats(database, order_number: str) -> List[int]:
    """Enroll the workshop lines of a paid order that do not hold seats yet.

    Returns the indexes of lines that could not be seated. Those leave the
    order flagged with `seating_failed` and a tracking event, so it can be
    retried once capacity frees up or refunded.
    """
    order = load_order(database, order_number)
    failed = []
    for index, item in enumerate(order.items):
        if item.item_type != "workshop" or item.seats_reserved:
            continue
        try:
            enroll(database, item.item_id, item.quantity)
        except MarketplaceError as exc:
            logger.error("Seats for %s on %s not reserved: %s", item.item_id, order_number, exc.message)
            failed.append(index)
            continue
        database["order"].update_one({"order_number": order_number},
                                     {"$set": {f"items.{index}.seats_reserved": True}})

    update = {"$set": {"seating_failed": bool(failed)}}
    if failed:
        names = ", ".join(order.items[i].name for i in failed)
        event = TrackingEvent(status="seating_failed", timestamp=datetime.now(timezone.utc),
                              message=f"No seats left for {names}")
        update["$push"] = {"tracking_history": event.model_dump()}
    database["order"].update_one({"order_number": order_number}, update)
    return failed
