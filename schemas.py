"""
Database Schemas for the shoe store

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class FlashSale -> collection "flashsale"

Embedded models (Variant, CartItem, OrderItem, ...) live inside their parent document.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from pricing import order_total, round_money

SHOE_SIZES = (
    "5", "5.5", "6", "6.5", "7", "7.5", "8", "8.5", "9", "9.5",
    "10", "10.5", "11", "11.5", "12", "12.5", "13", "14", "15",
)
ShoeSize = Literal[
    "5", "5.5", "6", "6.5", "7", "7.5", "8", "8.5", "9", "9.5",
    "10", "10.5", "11", "11.5", "12", "12.5", "13", "14", "15",
]
ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned")
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"]
ShippingMethod = Literal["standard", "express", "overnight"]


def new_id() -> str:
    return str(ObjectId())


def from_doc(model, doc: Optional[Dict[str, Any]]):
    """Build a model from a raw Mongo document, mapping _id -> id."""
    if doc is None:
        return None
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return model.model_validate(data)


# Core domain models

class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "US"
    phone: Optional[str] = None


class User(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    is_admin: bool = False
    addresses: List[Address] = Field(default_factory=list)


class Variant(BaseModel):
    id: str = Field(default_factory=new_id)
    size: ShoeSize
    color: str
    color_code: Optional[str] = None
    sku: str
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = None
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = 5
    is_active: bool = True

    @model_validator(mode="after")
    def _compare_at_not_below_price(self):
        if self.compare_at_price is not None and self.compare_at_price < self.price:
            raise ValueError("compare_at_price must be >= price")
        return self

    @property
    def key(self) -> Tuple[str, str]:
        return (self.size, self.color)


class Product(BaseModel):
    id: Optional[str] = None
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    brand: str
    category: str
    gender: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    is_active: bool = True

    def get_variant(self, size: str, color: str) -> Optional[Variant]:
        # per-product variant lists are small; a scan is fine
        for v in self.variants:
            if v.size == size and v.color == color:
                return v
        return None

    @property
    def min_price(self) -> float:
        if not self.variants:
            return 0.0
        return min(v.price for v in self.variants)

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


class CartItem(BaseModel):
    product_id: str
    size: ShoeSize
    color: str
    sku: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    added_at: datetime = Field(default_factory=datetime.utcnow)


class Cart(BaseModel):
    id: Optional[str] = None
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_amount: float = 0.0
    last_modified: datetime = Field(default_factory=datetime.utcnow)

    def recalculate(self) -> "Cart":
        self.total_items = sum(i.quantity for i in self.items)
        self.total_amount = round(sum(i.price * i.quantity for i in self.items), 2)
        self.last_modified = datetime.utcnow()
        return self


class Coupon(BaseModel):
    id: Optional[str] = None
    code: str
    description: str = ""
    discount_type: Literal["percentage", "fixed"]
    value: float = Field(..., ge=0)
    min_order_amount: float = 0.0
    max_discount: Optional[float] = Field(None, description="percentage coupons only")
    usage_limit: Optional[int] = Field(None, description="None means unlimited")
    used_count: int = 0
    user_usage_limit: Optional[int] = 1
    valid_from: datetime
    valid_to: datetime
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_brands: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_by: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()

    def is_currently_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return (
            self.is_active
            and self.valid_from <= now <= self.valid_to
            and (self.usage_limit is None or self.used_count < self.usage_limit)
        )

    def applies_to(self, product: Product) -> bool:
        if product.id in self.excluded_products:
            return False
        if not (self.applicable_products or self.applicable_categories or self.applicable_brands):
            return True
        return (
            product.id in self.applicable_products
            or product.category in self.applicable_categories
            or product.brand in self.applicable_brands
        )

    def calculate_discount(self, amount: float) -> float:
        if self.discount_type == "percentage":
            discount = amount * self.value / 100
            if self.max_discount is not None and discount > self.max_discount:
                discount = self.max_discount
        else:
            discount = self.value
        return min(discount, amount)


class FlashSaleEntry(BaseModel):
    product_id: str
    size: Optional[ShoeSize] = Field(None, description="None: every variant of the product")
    color: Optional[str] = None
    original_price: Optional[float] = None
    sale_price: float = Field(..., ge=0)
    available_quantity: Optional[int] = Field(None, description="None means unlimited")
    sold_quantity: int = 0

    def has_room_for(self, quantity: int) -> bool:
        return self.available_quantity is None or self.available_quantity >= quantity


class FlashSale(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    priority: int = 1
    is_active: bool = True
    started_notified: bool = False
    entries: List[FlashSaleEntry] = Field(default_factory=list)
    created_by: Optional[str] = None

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.is_active and self.start_time <= now <= self.end_time

    def get_entry(self, product_id: str, size: Optional[str] = None,
                  color: Optional[str] = None) -> Optional[FlashSaleEntry]:
        """Exact (product, size, color) entry first, then a whole-product entry."""
        fallback = None
        for e in self.entries:
            if e.product_id != product_id:
                continue
            if e.size == size and e.color == color and size is not None:
                return e
            if e.size is None and e.color is None and fallback is None:
                fallback = e
        return fallback


class ProductSnapshot(BaseModel):
    name: str
    brand: str
    image: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    product_snapshot: ProductSnapshot
    size: ShoeSize
    color: str
    sku: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    original_price: Optional[float] = None
    sale_price: Optional[float] = None
    flash_sale_discount: float = 0.0


class OrderDiscounts(BaseModel):
    coupon_code: Optional[str] = None
    coupon_discount: float = 0.0
    flash_sale_id: Optional[str] = None
    flash_sale_discount: float = 0.0


class Refund(BaseModel):
    amount: float = Field(..., gt=0)
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Payment(BaseModel):
    method: Literal["dummy", "stripe"] = "dummy"
    status: Literal["pending", "completed", "failed", "refunded", "partially_refunded"] = "pending"
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunds: List[Refund] = Field(default_factory=list)

    @property
    def refunded_amount(self) -> float:
        return round(sum(r.amount for r in self.refunds), 2)


class Tracking(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class Order(BaseModel):
    id: Optional[str] = None
    order_number: str
    user_id: str
    items: List[OrderItem]
    subtotal: float = 0.0
    tax: float = 0.0
    shipping_cost: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0
    discounts: OrderDiscounts = Field(default_factory=OrderDiscounts)
    shipping_address: Address
    shipping_method: ShippingMethod = "standard"
    payment: Payment = Field(default_factory=Payment)
    status: OrderStatus = "pending"
    tracking: Tracking = Field(default_factory=Tracking)
    confirmed_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    customer_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    is_gift: bool = False
    gift_message: Optional[str] = None
    usage_committed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def recalculate_totals(self) -> "Order":
        """Derive subtotal and total from the items; client figures are never trusted."""
        self.subtotal = round_money(sum(i.total_price for i in self.items))
        self.discount_amount = round_money(self.discounts.coupon_discount + self.discounts.flash_sale_discount)
        self.total_amount = order_total(self.subtotal, self.tax, self.shipping_cost, self.discount_amount)
        return self

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        if self.id:
            doc["_id"] = ObjectId(self.id)
        return doc


class Notification(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
