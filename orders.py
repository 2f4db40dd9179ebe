"""
Order lifecycle and inventory reservation.

Orders are created without touching stock. Staff later accept or reject them;
accepting re-validates every line against live stock and then reserves it.

Each line is reserved with one conditional update whose filter re-checks the
remaining quantity, so a concurrent accept can never push a product below
zero. If a later line loses that race, or the final status write finds the
order already moved on, the lines reserved so far are released again.
"""
import logging
import os
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from coupons import CouponError, record_usage, resolve_coupon
from database import utcnow
from schemas import CreateOrderRequest, Order, OrderLine

logger = logging.getLogger(__name__)

ACTIONABLE_STATUSES = ("pending", "pending_payment")
ACTION_TARGETS = {"accept": "accepted", "reject": "rejected"}

# Lifecycle edges reachable through the status-update route. accept/reject
# go through apply_action only.
STATUS_TRANSITIONS = {
    "pending_payment": ("pending", "cancelled"),
    "pending": ("cancelled",),
    "accepted": ("completed", "cancelled"),
    "rejected": (),
    "completed": (),
    "cancelled": (),
}

MONEY_TOLERANCE = 0.01
BKASH_NUMBER_RE = re.compile(r"[0-9]{11}")


class OrderError(Exception):
    def __init__(self, message: str, status_code: int = 400, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def generate_order_id() -> str:
    return "ORD-" + os.urandom(4).hex().upper()


def find_product(db, product_id: str) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(product_id):
        return None
    return db["product"].find_one({"_id": ObjectId(product_id)})


def find_size(product: Dict[str, Any], size: Optional[str]) -> Optional[Dict[str, Any]]:
    for entry in product.get("sizes") or []:
        if entry.get("name") == size:
            return entry
    return None


def is_size_gated(product: Dict[str, Any]) -> bool:
    return product.get("sizeRequirement") == "Mandatory"


def merge_lines(db, lines: List[Dict[str, Any]]) -> List[Tuple[Optional[Dict[str, Any]], Dict[str, Any]]]:
    """Pair each distinct stock unit with its live product.

    Lines drawing on the same stock (same product, plus the same size when
    sizes are mandatory) are summed so the checked quantity is what gets
    reserved.
    """
    products: Dict[str, Optional[Dict[str, Any]]] = {}
    merged: "OrderedDict[Tuple[str, Optional[str]], Dict[str, Any]]" = OrderedDict()
    for line in lines:
        product_id = str(line["productId"])
        if product_id not in products:
            products[product_id] = find_product(db, product_id)
        product = products[product_id]
        size = line.get("size") or None
        key = (product_id, size if product is None or is_size_gated(product) else None)
        if key in merged:
            merged[key]["quantity"] += int(line["quantity"])
        else:
            merged[key] = {
                "productId": product_id,
                "size": size,
                "title": line.get("title") or product_id,
                "quantity": int(line["quantity"]),
            }
    return [(products[pid], line) for (pid, _), line in merged.items()]


def check_stock(product: Dict[str, Any], line: Dict[str, Any]) -> Optional[str]:
    """Return a message when the product cannot cover the line, else None."""
    title = line.get("title") or product.get("title")
    quantity = line["quantity"]
    size = line.get("size")
    if is_size_gated(product):
        if not size:
            return f'Size is required for "{title}"'
        size_entry = find_size(product, size)
        if size_entry is None:
            return f'Size "{size}" not available for "{title}"'
        if size_entry.get("quantity", 0) < quantity:
            return (f'Insufficient stock for "{title}" size "{size}". '
                    f'Available: {size_entry.get("quantity", 0)}, Requested: {quantity}')
    elif product.get("quantity", 0) < quantity:
        return (f'Insufficient stock for "{title}". '
                f'Available: {product.get("quantity", 0)}, Requested: {quantity}')
    return None


def validate_line_for_acceptance(product: Optional[Dict[str, Any]], line: Dict[str, Any]) -> Optional[str]:
    title = line.get("title")
    if product is None:
        return f'Product "{title}" not found'
    if product.get("availability") != "InStock":
        return f'"{title}" is currently out of stock'
    if product.get("productType") == "Affiliate":
        return f'"{title}" is an affiliate product and cannot be processed'
    return check_stock(product, line)


def stock_report(db, lines: List[Dict[str, Any]]) -> Tuple[bool, List[str]]:
    """Per-line availability report for the staff order review screen."""
    issues = []
    is_valid = True
    for product, line in merge_lines(db, lines):
        message = validate_line_for_acceptance(product, line)
        if message:
            issues.append(message)
            is_valid = False
        else:
            issues.append(f'"{line["title"]}" - {line["quantity"]} units available')
    return is_valid, issues


# ---------- Order creation ----------

def _validate_payment(payload: CreateOrderRequest) -> None:
    info = payload.customerInfo
    if payload.paymentMethod == "bkash":
        if not info.bkashNumber or not info.transactionId:
            raise OrderError("Bkash number and Transaction ID required for Bkash payment")
        if not BKASH_NUMBER_RE.fullmatch(info.bkashNumber):
            raise OrderError("Invalid Bkash number. Must be 11 digits.")
    if payload.paymentMethod in ("cod", "bkash") and info.country == "Bangladesh":
        if not info.district or not info.thana:
            raise OrderError("District and thana required for COD and Bkash orders in Bangladesh")


def _snapshot_lines(db, lines: List[OrderLine]) -> List[Dict[str, Any]]:
    snapshot = []
    for line in lines:
        product = find_product(db, line.productId)
        if product is None:
            raise OrderError(f"Product not found for ID {line.productId}")
        title = product.get("title") or line.title
        if product.get("availability") != "InStock":
            raise OrderError(f'"{title}" is currently out of stock')
        snapshot.append({
            "productId": str(product["_id"]),
            "title": title,
            "quantity": line.quantity,
            "price": line.price,
            "mainImage": line.mainImage or product.get("mainImage"),
            "size": line.size or None,
        })
    for product, line in merge_lines(db, snapshot):
        message = check_stock(product, line)
        if message:
            raise OrderError(message)
    return snapshot


def _check_discount(payload: CreateOrderRequest, coupon: Dict[str, Any], lines: List[Dict[str, Any]]) -> None:
    if coupon["type"] == "global":
        if abs(payload.discount - coupon["discountAmount"]) > MONEY_TOLERANCE:
            raise OrderError("Invalid discount amount")
        return
    eligible = sum(l["price"] * l["quantity"] for l in lines if l["productId"] == coupon["productId"])
    allowed = round(eligible * coupon["discountPercentage"] / 100.0, 2)
    if payload.discount > allowed + MONEY_TOLERANCE:
        raise OrderError("Invalid discount amount")


def create_order(db, payload: CreateOrderRequest, user_id: Optional[str] = None) -> Dict[str, Any]:
    _validate_payment(payload)
    lines = _snapshot_lines(db, payload.products)

    order_id = payload.orderId or generate_order_id()
    if db["order"].find_one({"orderId": order_id}, {"_id": 1}):
        raise OrderError("Order already exists")

    coupon = None
    coupon_code = payload.couponCode.strip() if payload.couponCode else None
    if coupon_code:
        subtotal = sum(l["price"] * l["quantity"] for l in lines)
        try:
            coupon = resolve_coupon(
                db, coupon_code, [l["productId"] for l in lines], subtotal,
                payload.customerInfo.email, payload.customerInfo.phone,
            )
        except CouponError as e:
            raise OrderError(e.message, status_code=e.status_code)
        _check_discount(payload, coupon, lines)
        coupon_code = coupon["code"]
    elif payload.discount:
        raise OrderError("Discount requires a coupon code")

    status = "pending_payment" if payload.paymentMethod == "bkash" else "pending"
    order = Order(
        orderId=order_id,
        products=lines,
        customerInfo=payload.customerInfo,
        paymentMethod=payload.paymentMethod,
        status=status,
        total=payload.total,
        discount=payload.discount,
        shippingCharge=payload.shippingCharge,
        couponCode=coupon_code,
    )
    now = utcnow()
    doc = order.model_dump()
    doc["customerInfo"]["email"] = doc["customerInfo"]["email"].lower()
    doc.update({"userId": user_id, "createdAt": now, "updatedAt": now})
    try:
        db["order"].insert_one(doc)
    except DuplicateKeyError:
        raise OrderError("Order already exists")
    logger.info("Order %s created (%s, %d lines)", order_id, status, len(lines))

    if coupon and coupon["type"] == "product" and coupon["useType"] == "one-time":
        try:
            record_usage(db, coupon_code, payload.customerInfo.email, payload.customerInfo.phone, user_id)
        except CouponError as e:
            db["order"].delete_one({"_id": doc["_id"]})
            logger.warning("Order %s withdrawn, coupon %s: %s", order_id, coupon_code, e.message)
            raise OrderError(e.message, status_code=e.status_code)
    return doc


# ---------- Admin action ----------

def _reserve(db, product: Dict[str, Any], line: Dict[str, Any]) -> bool:
    quantity = line["quantity"]
    if is_size_gated(product):
        result = db["product"].update_one(
            {"_id": product["_id"], "sizes": {"$elemMatch": {"name": line["size"], "quantity": {"$gte": quantity}}}},
            {"$inc": {"sizes.$.quantity": -quantity, "quantity": -quantity}, "$set": {"updatedAt": utcnow()}},
        )
    else:
        result = db["product"].update_one(
            {"_id": product["_id"], "quantity": {"$gte": quantity}},
            {"$inc": {"quantity": -quantity}, "$set": {"updatedAt": utcnow()}},
        )
    return result.matched_count == 1


def _release(db, reserved: List[Tuple[Dict[str, Any], Dict[str, Any]]], order_id: str) -> None:
    for product, line in reversed(reserved):
        quantity = line["quantity"]
        if is_size_gated(product):
            db["product"].update_one(
                {"_id": product["_id"], "sizes.name": line["size"]},
                {"$inc": {"sizes.$.quantity": quantity, "quantity": quantity}},
            )
        else:
            db["product"].update_one({"_id": product["_id"]}, {"$inc": {"quantity": quantity}})
        logger.warning("Order %s: released %d of %s", order_id, quantity, line["title"])


def _accept(db, order: Dict[str, Any]) -> None:
    order_id = order["orderId"]
    checked = []
    errors = []
    for product, line in merge_lines(db, order.get("products") or []):
        message = validate_line_for_acceptance(product, line)
        if message:
            errors.append(message)
        else:
            checked.append((product, line))
    if errors:
        logger.warning("Order %s not accepted: %s", order_id, "; ".join(errors))
        raise OrderError("Cannot accept order", details=errors)

    reserved: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
    try:
        for product, line in checked:
            if not _reserve(db, product, line):
                _release(db, reserved, order_id)
                raise OrderError(
                    "Cannot accept order",
                    details=[f'Stock for "{line["title"]}" changed while accepting the order. Please retry.'],
                )
            reserved.append((product, line))

        result = db["order"].update_one(
            {"orderId": order_id, "status": order["status"]},
            {"$set": {"status": "accepted", "updatedAt": utcnow()}},
        )
        if result.matched_count != 1:
            _release(db, reserved, order_id)
            raise OrderError("Order was modified by another request")
    except PyMongoError:
        logger.exception("Order %s: store error while reserving stock", order_id)
        _release(db, reserved, order_id)
        raise
    logger.info("Order %s accepted, reserved %d lines", order_id, len(reserved))


def apply_action(db, order_id: str, action: str) -> Dict[str, Any]:
    order = db["order"].find_one({"orderId": order_id})
    if not order:
        raise OrderError("Order not found", status_code=404)

    target = ACTION_TARGETS[action]
    status = order.get("status")
    if status == target:
        raise OrderError(f"Order is already {target}")
    if status not in ACTIONABLE_STATUSES:
        raise OrderError(f"Cannot {action} an order that is {status}")

    if action == "accept":
        _accept(db, order)
    else:
        result = db["order"].update_one(
            {"orderId": order_id, "status": status},
            {"$set": {"status": "rejected", "updatedAt": utcnow()}},
        )
        if result.matched_count != 1:
            raise OrderError("Order was modified by another request")
        logger.info("Order %s rejected", order_id)

    return db["order"].find_one({"orderId": order_id})


def update_status(db, order_id: str, status: str) -> Dict[str, Any]:
    order = db["order"].find_one({"orderId": order_id})
    if not order:
        raise OrderError("Order not found", status_code=404)
    current = order.get("status")
    if status in ("accepted", "rejected"):
        raise OrderError("Use the order action to accept or reject an order")
    if status not in STATUS_TRANSITIONS.get(current, ()):
        raise OrderError(f"Cannot move order from {current} to {status}")
    result = db["order"].update_one(
        {"orderId": order_id, "status": current},
        {"$set": {"status": status, "updatedAt": utcnow()}},
    )
    if result.matched_count != 1:
        raise OrderError("Order was modified by another request")
    logger.info("Order %s moved %s -> %s", order_id, current, status)
    return db["order"].find_one({"orderId": order_id})
