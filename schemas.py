"""
Database Schemas for the storefront

Each Pydantic model maps to a MongoDB collection (lowercased class name).
Field names are camelCase, matching what the storefront sends and stores.

Collections:
- product
- order
- coupon
- usedcoupon
- config
- shippingcharge
- banner
- user
- otp

Request payloads accepted by the API live at the bottom of this module.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Currency = Literal["BDT", "USD", "EUR"]
ProductType = Literal["Own", "Affiliate"]
Availability = Literal["InStock", "OutOfStock", "PreOrder"]
SizeRequirement = Literal["Optional", "Mandatory"]
PaymentMethod = Literal["cod", "pay_first", "bkash"]
OrderStatus = Literal["pending", "pending_payment", "accepted", "rejected", "completed", "cancelled"]
UseType = Literal["one-time", "multiple"]
ShippingRegion = Literal["Dhaka-Chattogram", "Others"]
Role = Literal["admin", "moderator", "user"]

ORDER_STATUSES = ("pending", "pending_payment", "accepted", "rejected", "completed", "cancelled")


class Price(BaseModel):
    currency: Currency
    amount: float = Field(..., ge=0)
    exchangeRate: Optional[float] = None


class SizeStock(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=0)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    title: str = Field(..., description="Product title")
    slug: str = Field(..., description="Unique URL slug")
    prices: List[Price] = Field(default_factory=list, description="Price per currency")
    mainImage: str = Field(..., description="Primary image URL (hosted on the media CDN)")
    description: str = Field("", description="Product description")
    productType: ProductType = Field("Own", description="Own stock or affiliate listing")
    affiliateLink: Optional[str] = None
    brand: str = Field("", description="Product brand")
    category: str = Field("", description="Category id or name")
    quantity: int = Field(0, ge=0, description="Aggregate units in stock")
    availability: Availability = "InStock"
    sizeRequirement: SizeRequirement = "Optional"
    sizes: List[SizeStock] = Field(default_factory=list, description="Per-size stock")


class OrderLine(BaseModel):
    productId: str = Field(..., description="Referenced product id as string")
    title: str = Field(..., description="Snapshot of product title")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    price: float = Field(..., ge=0, description="Snapshot of unit price")
    mainImage: Optional[str] = None
    size: Optional[str] = None


class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: str = "Bangladesh"
    district: Optional[str] = None
    thana: Optional[str] = None
    bkashNumber: Optional[str] = None
    transactionId: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    orderId: str = Field(..., description="Public order reference")
    products: List[OrderLine]
    customerInfo: CustomerInfo
    paymentMethod: PaymentMethod
    status: OrderStatus = "pending"
    total: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    shippingCharge: float = Field(0, ge=0)
    couponCode: Optional[str] = None


class Coupon(BaseModel):
    """
    Product-scoped coupons
    Collection name: "coupon"
    """
    code: str = Field(..., min_length=1, description="Unique code, stored upper-case")
    productId: str
    discountPercentage: float = Field(..., ge=0, le=100)
    useType: UseType = "one-time"
    expiresAt: datetime
    isActive: bool = True


class GlobalCoupon(BaseModel):
    """Value stored under Config key "globalCoupon"."""
    code: str = Field(..., min_length=1)
    discountAmount: float = Field(..., ge=0)
    minCartTotal: float = Field(..., ge=0)
    expiresAt: datetime


class ShippingCharge(BaseModel):
    type: ShippingRegion
    charge: float = Field(..., ge=0)


class BannerButton(BaseModel):
    text: str
    link: str
    type: str = "gray"


class Banner(BaseModel):
    title: str
    subtitle: Optional[str] = None
    image: str = Field(..., description="Image URL")
    imagePublicId: str = Field(..., description="Media CDN public id")
    buttons: List[BannerButton] = Field(default_factory=list)
    isActive: bool = True
    order: int = 0
    duration: int = Field(5, ge=1, description="Seconds on screen")


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., max_length=50)
    email: EmailStr
    phone: Optional[str] = None
    passwordHash: str = Field(..., description="BCrypt password hash")
    role: Role = "user"
    isActive: bool = True


# ---------- Request payloads ----------

class CreateOrderRequest(BaseModel):
    orderId: Optional[str] = None
    products: List[OrderLine] = Field(..., min_length=1)
    customerInfo: CustomerInfo
    paymentMethod: PaymentMethod
    total: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    shippingCharge: float = Field(0, ge=0)
    couponCode: Optional[str] = None


class OrderActionRequest(BaseModel):
    orderId: str = Field(..., min_length=1)
    action: Literal["accept", "reject"]


class UpdateStatusRequest(BaseModel):
    orderId: str = Field(..., min_length=1)
    status: OrderStatus


class ValidateProductsRequest(BaseModel):
    orderId: Optional[str] = None
    products: List[OrderLine]


class CartValidateRequest(BaseModel):
    productId: str
    quantity: int
    size: Optional[str] = None


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    productIds: List[str]
    cartTotal: float = Field(..., ge=0)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    userId: Optional[str] = None


class RecordUsageRequest(BaseModel):
    couponCode: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    userId: Optional[str] = None


class ProductUpdateRequest(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    prices: Optional[List[Price]] = None
    mainImage: Optional[str] = None
    description: Optional[str] = None
    productType: Optional[ProductType] = None
    affiliateLink: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    availability: Optional[Availability] = None
    sizeRequirement: Optional[SizeRequirement] = None
    sizes: Optional[List[SizeStock]] = None


class BannerUpdateRequest(BaseModel):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    image: Optional[str] = None
    imagePublicId: Optional[str] = None
    buttons: Optional[List[BannerButton]] = None
    isActive: Optional[bool] = None
    order: Optional[int] = None
    duration: Optional[int] = Field(None, ge=1)


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserUpdateRequest(BaseModel):
    role: Optional[Role] = None
    isActive: Optional[bool] = None


class OtpSendRequest(BaseModel):
    phone: str


class OtpVerifyRequest(BaseModel):
    phone: str
    otp: str
