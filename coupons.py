"""
Coupon and discount resolution.

Two kinds of codes exist. Product coupons live in the "coupon" collection and
give a percentage off one product; they win whenever the code matches one.
The store-wide coupon is the "globalCoupon" config record and gives a flat
amount off carts above a minimum total.
"""
import logging
import re
from typing import Any, Dict, Iterable, Optional

from pymongo.errors import DuplicateKeyError

from database import as_utc, utcnow

logger = logging.getLogger(__name__)

GLOBAL_COUPON_KEY = "globalCoupon"


class CouponError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _code_pattern(code: str) -> Dict[str, Any]:
    return {"$regex": f"^{re.escape(code.strip())}$", "$options": "i"}


def find_product_coupon(db, code: str, active_only: bool = True) -> Optional[Dict[str, Any]]:
    query: Dict[str, Any] = {"code": normalize_code(code)}
    if active_only:
        query["isActive"] = True
    return db["coupon"].find_one(query)


def get_global_coupon(db) -> Optional[Dict[str, Any]]:
    config = db["config"].find_one({"key": GLOBAL_COUPON_KEY})
    if not config or not isinstance(config.get("value"), dict):
        return None
    return config["value"]


def find_global_coupon(db, code: str) -> Optional[Dict[str, Any]]:
    config = db["config"].find_one({"key": GLOBAL_COUPON_KEY, "value.code": _code_pattern(code)})
    if not config or not config.get("value", {}).get("code"):
        return None
    return config["value"]


def has_used_coupon(db, code: str, email: str, phone: str) -> bool:
    receipt = db["usedcoupon"].find_one({
        "couponCode": normalize_code(code),
        "$or": [{"email": email.lower()}, {"phone": phone}],
    })
    return receipt is not None


def _is_expired(expires_at) -> bool:
    return expires_at is not None and as_utc(expires_at) < utcnow()


def resolve_coupon(db, code: str, product_ids: Iterable[str], cart_total: float, email: str, phone: str) -> Dict[str, Any]:
    """Resolve a code against a cart.

    Returns ``{"valid": True, "type": "product", ...}`` or
    ``{"valid": True, "type": "global", ...}``; raises CouponError otherwise.
    """
    product_ids = {str(pid) for pid in product_ids}

    coupon = find_product_coupon(db, code)
    if coupon:
        if coupon.get("productId") not in product_ids:
            raise CouponError("Coupon not applicable to cart items")
        if _is_expired(coupon.get("expiresAt")):
            raise CouponError("Coupon has expired")
        if coupon.get("useType") == "one-time" and has_used_coupon(db, coupon["code"], email, phone):
            raise CouponError("Coupon already used with this email or phone number")
        return {
            "valid": True,
            "type": "product",
            "code": coupon["code"],
            "discountPercentage": coupon["discountPercentage"],
            "productId": coupon["productId"],
            "useType": coupon.get("useType", "one-time"),
        }

    global_coupon = find_global_coupon(db, code)
    if global_coupon:
        discount_amount = global_coupon.get("discountAmount")
        min_cart_total = global_coupon.get("minCartTotal")
        if not isinstance(discount_amount, (int, float)) or not isinstance(min_cart_total, (int, float)):
            raise CouponError("Invalid coupon configuration")
        if cart_total < min_cart_total:
            raise CouponError(f"Cart total must be at least ৳{min_cart_total:g}")
        if _is_expired(global_coupon.get("expiresAt")):
            raise CouponError("Global coupon has expired")
        return {
            "valid": True,
            "type": "global",
            "code": global_coupon["code"],
            "discountAmount": discount_amount,
        }

    raise CouponError("Invalid coupon code")


def record_usage(db, code: str, email: str, phone: str, user_id: Optional[str] = None) -> bool:
    """Write a usage receipt for a one-time product coupon.

    Returns True when a receipt was written. Multiple-use and global coupons
    need no receipt.
    """
    coupon = find_product_coupon(db, code, active_only=False)
    if coupon is None:
        if find_global_coupon(db, code) is None:
            raise CouponError("Coupon not found", status_code=404)
        return False
    if coupon.get("useType") != "one-time":
        return False
    if has_used_coupon(db, coupon["code"], email, phone):
        raise CouponError("Coupon already used by this customer")
    try:
        db["usedcoupon"].insert_one({
            "couponCode": coupon["code"],
            "email": email.lower(),
            "phone": phone,
            "userId": user_id,
            "usedAt": utcnow(),
        })
    except DuplicateKeyError:
        raise CouponError("Coupon already used by this customer")
    logger.info("Recorded one-time use of coupon %s", coupon["code"])
    return True
