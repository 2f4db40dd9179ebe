import logging
import os
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import coupons
import orders
import otp
from auth import (
    create_token,
    get_current_user,
    get_optional_user,
    hash_password,
    public_user,
    require_admin,
    require_staff,
    verify_password,
)
from database import as_utc, create_document, db, ensure_indexes, get_db, utcnow
from schemas import (
    ORDER_STATUSES,
    Banner as BannerSchema,
    BannerUpdateRequest,
    CartValidateRequest,
    Coupon as CouponSchema,
    CouponValidateRequest,
    CreateOrderRequest,
    GlobalCoupon as GlobalCouponSchema,
    LoginRequest,
    OrderActionRequest,
    OtpSendRequest,
    OtpVerifyRequest,
    Product as ProductSchema,
    ProductUpdateRequest,
    RecordUsageRequest,
    ShippingCharge as ShippingChargeSchema,
    SignupRequest,
    UpdateStatusRequest,
    User as UserSchema,
    UserUpdateRequest,
    ValidateProductsRequest,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# App init
app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DEFAULT_SHIPPING_CHARGES = [
    {"type": "Dhaka-Chattogram", "charge": 100},
    {"type": "Others", "charge": 150},
]
MAX_CART_LINE_QUANTITY = 3


# Utils
def serialize_doc(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = as_utc(v).isoformat()
    return doc


def error_body(message: str, details: Optional[List[str]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": message}
    if details:
        body["details"] = details
    return body


def raise_domain_error(exc) -> None:
    raise HTTPException(status_code=exc.status_code, detail=error_body(exc.message, getattr(exc, "details", None)))


def object_id(id_str: str, what: str = "id") -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail=f"Invalid {what}")
    return ObjectId(id_str)


def sync_size_quantity(doc: Dict[str, Any]) -> None:
    """Aggregate quantity of a size-gated product is the sum of its sizes."""
    if doc.get("sizeRequirement") == "Mandatory":
        doc["quantity"] = sum(int(s.get("quantity", 0)) for s in doc.get("sizes") or [])


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else error_body(str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())[1:])
        details.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return JSONResponse(status_code=400, content=error_body("Invalid request", details))


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


@app.on_event("startup")
def init_database():
    if db is None:
        logger.warning("DATABASE_URL not set; data routes will answer 503")
        return
    ensure_indexes(db)


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/auth/signup", status_code=201)
def signup(req: SignupRequest, db=Depends(get_db)):
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(name=req.name, email=email, phone=req.phone, passwordHash=hash_password(req.password))
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = db["user"].find_one({"_id": ObjectId(user_id)})
    logger.info("User %s signed up", email)
    return {"token": create_token(doc), "user": public_user(doc)}


@app.post("/api/auth/login")
def login(req: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": req.email.lower()})
    if not user or not verify_password(req.password, user.get("passwordHash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("isActive", True):
        raise HTTPException(status_code=403, detail="Account is disabled")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/api/users/me")
def me(user=Depends(get_current_user)):
    return public_user(user)


@app.get("/api/users/me/orders")
def my_orders(user=Depends(get_current_user), db=Depends(get_db)):
    docs = db["order"].find({"customerInfo.email": user["email"]}).sort("createdAt", -1)
    return [serialize_doc(d) for d in docs]


@app.get("/api/admin/users")
def list_users(admin=Depends(require_admin), db=Depends(get_db)):
    return [public_user(u) for u in db["user"].find().sort("createdAt", -1)]


@app.patch("/api/admin/users/{user_id}")
def update_user(user_id: str, req: UserUpdateRequest, admin=Depends(require_admin), db=Depends(get_db)):
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    oid = object_id(user_id, "user id")
    if oid == admin["_id"]:
        raise HTTPException(status_code=400, detail="Admins cannot change their own role or status")
    updates["updatedAt"] = utcnow()
    result = db["user"].update_one({"_id": oid}, {"$set": updates})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(db["user"].find_one({"_id": oid}))


@app.get("/api/admin/stats")
def admin_stats(staff=Depends(require_staff), db=Depends(get_db)):
    by_status = {status: db["order"].count_documents({"status": status}) for status in ORDER_STATUSES}
    return {
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": sum(by_status.values()),
        "ordersByStatus": by_status,
    }


# Products
@app.get("/api/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None,
                  availability: Optional[str] = None, db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]
    if category and category.lower() != "all":
        query["category"] = category
    if availability:
        query["availability"] = availability
    products = db["product"].find(query).sort("createdAt", -1).limit(100)
    return [serialize_doc(p) for p in products]


@app.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str, db=Depends(get_db)):
    p = db["product"].find_one({"slug": slug})
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(p)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    p = db["product"].find_one({"_id": object_id(product_id, "product id")})
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(p)


@app.post("/api/products", status_code=201)
def create_product(req: ProductSchema, admin=Depends(require_admin), db=Depends(get_db)):
    doc = req.model_dump()
    sync_size_quantity(doc)
    try:
        _id = create_document(db, "product", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Slug already in use")
    logger.info("Product %s created", req.slug)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, req: ProductUpdateRequest, admin=Depends(require_admin), db=Depends(get_db)):
    oid = object_id(product_id, "product id")
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    merged = {**existing, **updates}
    sync_size_quantity(merged)
    if merged.get("sizeRequirement") == "Mandatory":
        updates["quantity"] = merged["quantity"]
    updates["updatedAt"] = utcnow()
    try:
        db["product"].update_one({"_id": oid}, {"$set": updates})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Slug already in use")
    return serialize_doc(db["product"].find_one({"_id": oid}))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = db["product"].delete_one({"_id": object_id(product_id, "product id")})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


@app.post("/api/products/validate")
def validate_products(req: ValidateProductsRequest, staff=Depends(require_staff), db=Depends(get_db)):
    is_valid, issues = orders.stock_report(db, [line.model_dump() for line in req.products])
    return {"isValid": is_valid, "issues": issues, "orderId": req.orderId}


@app.post("/api/cart/validate")
def validate_cart(req: CartValidateRequest, db=Depends(get_db)):
    if not ObjectId.is_valid(req.productId):
        return JSONResponse(status_code=400, content={"valid": False, "message": "Invalid product ID"})
    if not 1 <= req.quantity <= MAX_CART_LINE_QUANTITY:
        return JSONResponse(status_code=400, content={
            "valid": False, "message": f"Quantity must be between 1 and {MAX_CART_LINE_QUANTITY}",
        })
    product = orders.find_product(db, req.productId)
    if not product:
        return JSONResponse(status_code=404, content={"valid": False, "message": "Product not found"})
    if product.get("availability") != "InStock" or product.get("quantity", 0) <= 0:
        return JSONResponse(status_code=400, content={"valid": False, "message": "Product is out of stock"})
    message = orders.check_stock(product, {"title": product.get("title"), "quantity": req.quantity, "size": req.size})
    if message:
        return JSONResponse(status_code=400, content={"valid": False, "message": message})
    return {"valid": True}


# Orders
@app.get("/api/orders")
def list_orders(orderId: Optional[str] = None, status: Optional[str] = None, date: Optional[date] = None,
                staff=Depends(require_staff), db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if orderId:
        query["orderId"] = orderId
    if status:
        query["status"] = {"$in": [s.strip() for s in status.split(",") if s.strip()]}
    if date:
        start = datetime.combine(date, time.min)
        query["createdAt"] = {"$gte": start, "$lt": start + timedelta(days=1)}
    docs = db["order"].find(query).sort("createdAt", -1)
    return [serialize_doc(d) for d in docs]


@app.post("/api/orders", status_code=201)
def create_order(req: CreateOrderRequest, user=Depends(get_optional_user), db=Depends(get_db)):
    try:
        order = orders.create_order(db, req, user_id=str(user["_id"]) if user else None)
    except orders.OrderError as e:
        logger.info("Order rejected at checkout: %s", e.message)
        raise_domain_error(e)
    return {
        "success": True,
        "message": "Order created successfully",
        "orderId": order["orderId"],
        "order": serialize_doc(order),
    }


@app.post("/api/orders/action")
def order_action(req: OrderActionRequest, staff=Depends(require_staff), db=Depends(get_db)):
    try:
        order = orders.apply_action(db, req.orderId, req.action)
    except orders.OrderError as e:
        raise_domain_error(e)
    return {
        "success": True,
        "message": f"Order {order['status']}",
        "order": {
            "orderId": order["orderId"],
            "status": order["status"],
            "updatedAt": as_utc(order["updatedAt"]).isoformat(),
        },
    }


@app.post("/api/orders/update-status")
def update_order_status(req: UpdateStatusRequest, staff=Depends(require_staff), db=Depends(get_db)):
    try:
        order = orders.update_status(db, req.orderId, req.status)
    except orders.OrderError as e:
        raise_domain_error(e)
    return {"success": True, "message": "Order status updated", "order": serialize_doc(order)}


# Coupons
@app.post("/api/coupons/validate")
def validate_coupon(req: CouponValidateRequest, db=Depends(get_db)):
    try:
        return coupons.resolve_coupon(db, req.code, req.productIds, req.cartTotal, req.email, req.phone)
    except coupons.CouponError as e:
        return JSONResponse(status_code=e.status_code, content={"valid": False, "message": e.message})


@app.post("/api/coupons/record-usage")
def record_coupon_usage(req: RecordUsageRequest, db=Depends(get_db)):
    try:
        coupons.record_usage(db, req.couponCode, req.email, req.phone, req.userId)
    except coupons.CouponError as e:
        raise_domain_error(e)
    return {"message": "Coupon usage recorded"}


@app.get("/api/coupons")
def list_coupons(staff=Depends(require_staff), db=Depends(get_db)):
    return [serialize_doc(c) for c in db["coupon"].find({"isActive": True}).sort("expiresAt", 1)]


@app.post("/api/coupons")
def upsert_coupon(req: CouponSchema, admin=Depends(require_admin), db=Depends(get_db)):
    if as_utc(req.expiresAt) < utcnow():
        raise HTTPException(status_code=400, detail="Expiry date must be in the future")
    if not orders.find_product(db, req.productId):
        raise HTTPException(status_code=400, detail="Product not found")
    code = coupons.normalize_code(req.code)
    now = utcnow()
    db["coupon"].update_one(
        {"code": code},
        {
            "$set": {
                "productId": req.productId,
                "discountPercentage": req.discountPercentage,
                "useType": req.useType,
                "expiresAt": as_utc(req.expiresAt),
                "isActive": True,
                "updatedAt": now,
            },
            "$setOnInsert": {"createdAt": now},
        },
        upsert=True,
    )
    logger.info("Coupon %s saved", code)
    return {"message": "Coupon updated", "code": code}


@app.delete("/api/coupons/{code}")
def delete_coupon(code: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = db["coupon"].delete_one({"code": coupons.normalize_code(code)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"message": "Coupon deleted"}


@app.get("/api/config/global-coupon")
def get_global_coupon(db=Depends(get_db)):
    value = coupons.get_global_coupon(db)
    if not value:
        return {}
    return serialize_doc(value)


@app.post("/api/config/global-coupon")
def set_global_coupon(req: GlobalCouponSchema, admin=Depends(require_admin), db=Depends(get_db)):
    if as_utc(req.expiresAt) < utcnow():
        raise HTTPException(status_code=400, detail="Invalid or past expiry date")
    value = req.model_dump()
    value["code"] = value["code"].strip()
    value["expiresAt"] = as_utc(req.expiresAt)
    db["config"].update_one(
        {"key": coupons.GLOBAL_COUPON_KEY},
        {"$set": {"value": value, "updatedAt": utcnow()}},
        upsert=True,
    )
    logger.info("Global coupon set to %s", value["code"])
    return {"message": "Global coupon updated"}


# Shipping
@app.get("/api/shipping-charges")
def get_shipping_charges(db=Depends(get_db)):
    charges = list(db["shippingcharge"].find({}, {"_id": 0, "type": 1, "charge": 1}))
    if not charges:
        for entry in DEFAULT_SHIPPING_CHARGES:
            db["shippingcharge"].update_one(
                {"type": entry["type"]},
                {"$setOnInsert": {"charge": entry["charge"], "updatedAt": utcnow()}},
                upsert=True,
            )
        charges = list(db["shippingcharge"].find({}, {"_id": 0, "type": 1, "charge": 1}))
    return sorted(charges, key=lambda c: c["type"])


@app.post("/api/shipping-charges")
def set_shipping_charges(charges: List[ShippingChargeSchema], admin=Depends(require_admin), db=Depends(get_db)):
    if len(charges) != 2 or {c.type for c in charges} != {"Dhaka-Chattogram", "Others"}:
        raise HTTPException(status_code=400, detail="Expected one charge for Dhaka-Chattogram and one for Others")
    for entry in charges:
        db["shippingcharge"].update_one(
            {"type": entry.type},
            {"$set": {"charge": entry.charge, "updatedAt": utcnow()}},
            upsert=True,
        )
    return {"message": "Shipping charges updated"}


# OTP
@app.post("/api/otp/send")
def send_otp(req: OtpSendRequest, db=Depends(get_db), sender=Depends(otp.get_sms_sender)):
    try:
        otp.send_otp(db, req.phone, sender)
    except otp.OtpError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "message": e.message})
    return {"success": True, "message": "OTP sent successfully"}


@app.post("/api/otp/verify")
def verify_otp(req: OtpVerifyRequest, db=Depends(get_db)):
    try:
        otp.verify_otp(db, req.phone, req.otp)
    except otp.OtpError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "message": e.message})
    return {"success": True, "message": "Phone verified successfully"}


@app.post("/api/otp/check")
def check_otp(req: OtpSendRequest, db=Depends(get_db)):
    verified_at = otp.check_verified(db, req.phone)
    return {"success": True, "verified": verified_at is not None, "verifiedAt": verified_at}


# Banners
@app.get("/api/banners")
def list_active_banners(db=Depends(get_db)):
    return [serialize_doc(b) for b in db["banner"].find({"isActive": True}).sort("order", 1)]


@app.get("/api/admin/banners")
def list_banners(admin=Depends(require_admin), db=Depends(get_db)):
    return [serialize_doc(b) for b in db["banner"].find().sort("order", 1)]


@app.post("/api/admin/banners", status_code=201)
def create_banner(req: BannerSchema, admin=Depends(require_admin), db=Depends(get_db)):
    _id = create_document(db, "banner", req)
    return serialize_doc(db["banner"].find_one({"_id": ObjectId(_id)}))


@app.put("/api/admin/banners/{banner_id}")
def update_banner(banner_id: str, req: BannerUpdateRequest, admin=Depends(require_admin), db=Depends(get_db)):
    oid = object_id(banner_id, "banner id")
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updatedAt"] = utcnow()
    result = db["banner"].update_one({"_id": oid}, {"$set": updates})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Banner not found")
    return serialize_doc(db["banner"].find_one({"_id": oid}))


@app.delete("/api/admin/banners/{banner_id}")
def delete_banner(banner_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = db["banner"].delete_one({"_id": object_id(banner_id, "banner id")})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Banner not found")
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
