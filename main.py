import asyncio
import contextlib
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import jwt
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from cart import CartService
from config import get_settings
from database import ensure_indexes, get_db
from discounts import LineItem
from errors import CommerceError, CouponNotFound, PersistenceFailure
from logs import configure_logging
from notifications import LogNotificationHandler, MongoNotificationHandler, NotificationSink
from orders import OrderService
from schemas import Address, Coupon, FlashSale, Product, Variant
from stores import CartStore, CatalogStore, PromotionStore, to_object_id
from sweeps import run_sweeps

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    task = None
    if database.db is not None:
        ensure_indexes(database.db)
        if settings.ENABLE_SWEEPS:
            sink = build_sink(database.db)
            task = asyncio.create_task(
                run_sweeps(PromotionStore(database.db), sink, settings.SWEEP_INTERVAL_SECONDS)
            )
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


# App setup
app = FastAPI(title="Shoe Store API", version="0.2.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.error("persistence_error", path=request.url.path, error=str(exc))
    err = PersistenceFailure("Storage error, please retry")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


# Security/JWT setup
security = HTTPBearer()
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": datetime.utcnow() + timedelta(minutes=settings.JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     db: Database = Depends(get_db)) -> dict:
    payload = decode_token(credentials.credentials)
    user = db["user"].find_one({"_id": to_object_id(payload.get("sub"))})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# Service wiring

def build_sink(db: Database) -> NotificationSink:
    return NotificationSink([LogNotificationHandler(), MongoNotificationHandler(db)])


def get_order_service(db: Database = Depends(get_db)) -> OrderService:
    return OrderService.from_db(db, settings, build_sink(db))


def get_cart_service(db: Database = Depends(get_db)) -> CartService:
    return CartService(CartStore(db), CatalogStore(db, max_stock=settings.MAX_VARIANT_STOCK))


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CartItemIn(BaseModel):
    product_id: str
    size: str
    color: str
    quantity: int = 1


class LineIn(BaseModel):
    product_id: str
    size: str
    color: str
    quantity: int = Field(1, ge=1)

    def to_line(self) -> LineItem:
        return LineItem(self.product_id, self.size, self.color, self.quantity)


class CreateOrderRequest(BaseModel):
    items: Optional[List[LineIn]] = None
    shipping_address: Address
    shipping_method: Literal["standard", "express", "overnight"] = "standard"
    coupon_code: Optional[str] = None
    customer_notes: Optional[str] = None
    is_gift: bool = False
    gift_message: Optional[str] = None


class CouponCheckRequest(BaseModel):
    code: str
    items: Optional[List[LineIn]] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str
    admin_notes: Optional[str] = None
    tracking: Optional[Dict[str, Any]] = None


class PaymentRequest(BaseModel):
    method: Literal["dummy", "stripe"] = "dummy"


class RefundRequest(BaseModel):
    amount: Optional[float] = None
    reason: Optional[str] = None


class CouponUpdateRequest(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = None
    max_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    user_usage_limit: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    applicable_brands: Optional[List[str]] = None
    excluded_products: Optional[List[str]] = None
    is_active: Optional[bool] = None


class StockSetRequest(BaseModel):
    stock: int = Field(..., ge=0)


class StockUpdateIn(BaseModel):
    product_id: str
    variant_id: str
    stock: int


# Health and helpers
@app.get("/")
def root():
    return {"message": "Shoe Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
def user_out(user: dict) -> dict:
    return {"id": str(user["_id"]), "name": user["name"], "email": user["email"],
            "is_admin": user.get("is_admin", False)}


@app.post("/auth/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = {
        "name": payload.name,
        "email": payload.email,
        "hashed_password": hash_password(payload.password),
        "is_active": True,
        "is_admin": False,
        "addresses": [],
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    inserted_id = db["user"].insert_one(doc).inserted_id
    user = db["user"].find_one({"_id": inserted_id})
    return {"token": create_token(user), "user": user_out(user)}


@app.post("/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": user_out(user)}


@app.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return {**user_out(current_user), "addresses": current_user.get("addresses", [])}


# Products
@app.get("/products")
def list_products(brand: Optional[str] = None, category: Optional[str] = None, page: int = 1,
                  page_size: int = 12, db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {"is_active": True}
    if brand:
        filt["brand"] = brand
    if category:
        filt["category"] = category
    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt).sort("created_at", -1).skip((page - 1) * page_size).limit(page_size)
    items = []
    for p in cursor:
        p["id"] = str(p.pop("_id"))
        items.append(p)
    return {"items": items, "page": page, "page_size": page_size, "total": total}


@app.get("/products/{product_id}")
def get_product(product_id: str, size: Optional[str] = None, color: Optional[str] = None,
                service: OrderService = Depends(get_order_service)):
    product = service.catalog.get_product(product_id)
    if product is None or not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": product, "best_discount": service.discounts.best_product_discount(product, size, color)}


# Inventory
@app.post("/inventory/availability")
def check_availability(items: List[LineIn], service: OrderService = Depends(get_order_service)):
    return {"items": service.inventory.check_availability([i.model_dump() for i in items])}


# Cart
@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.get(str(user["_id"]))


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user),
             carts: CartService = Depends(get_cart_service)):
    return carts.add_item(str(user["_id"]), item.product_id, item.size, item.color, item.quantity)


@app.post("/cart/update")
def cart_update(item: CartItemIn, user: dict = Depends(get_current_user),
                carts: CartService = Depends(get_cart_service)):
    return carts.update_quantity(str(user["_id"]), item.product_id, item.size, item.color, item.quantity)


@app.post("/cart/remove")
def cart_remove(item: CartItemIn, user: dict = Depends(get_current_user),
                carts: CartService = Depends(get_cart_service)):
    return carts.remove_item(str(user["_id"]), item.product_id, item.size, item.color)


@app.delete("/cart")
def cart_clear(user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.clear(str(user["_id"]))


# Promotions
@app.post("/coupons/validate")
def validate_coupon(payload: CouponCheckRequest, user: dict = Depends(get_current_user),
                    service: OrderService = Depends(get_order_service)):
    uid = str(user["_id"])
    if payload.items:
        lines = [i.to_line() for i in payload.items]
    else:
        cart = service.carts.get_or_create(uid)
        lines = [LineItem(i.product_id, i.size, i.color, i.quantity, price=i.price) for i in cart.items]
    products = service.catalog.get_products(line.product_id for line in lines)
    return service.discounts.preview_coupon(payload.code, lines, products, user_id=uid)


@app.get("/flash-sales/active")
def active_flash_sales(service: OrderService = Depends(get_order_service)):
    return {"items": service.promotions.find_active_flash_sales(datetime.utcnow())}


# Checkout & Orders
@app.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: dict = Depends(get_current_user),
                 service: OrderService = Depends(get_order_service)):
    order = service.create_order(
        str(user["_id"]),
        payload.shipping_address,
        shipping_method=payload.shipping_method,
        items=[i.to_line() for i in payload.items] if payload.items else None,
        coupon_code=payload.coupon_code,
        customer_notes=payload.customer_notes,
        is_gift=payload.is_gift,
        gift_message=payload.gift_message,
    )
    return {"status": "success", "order": order}


@app.get("/orders")
def list_orders(status: Optional[str] = None, page: int = 1, limit: int = 10,
                user: dict = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    orders, total = service.orders.list_for_user(str(user["_id"]), status=status, page=page, limit=limit)
    return {"items": orders, "page": page, "limit": limit, "total": total}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user),
              service: OrderService = Depends(get_order_service)):
    owner = None if user.get("is_admin") else str(user["_id"])
    return service.get_order(order_id, user_id=owner)


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: CancelRequest, user: dict = Depends(get_current_user),
                 service: OrderService = Depends(get_order_service)):
    return service.cancel_order(order_id, user_id=str(user["_id"]), reason=payload.reason)


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateRequest, user: dict = Depends(require_admin),
                        service: OrderService = Depends(get_order_service)):
    return service.update_status(order_id, payload.status, admin_notes=payload.admin_notes,
                                 tracking=payload.tracking)


@app.post("/orders/{order_id}/pay")
def pay_order(order_id: str, payload: PaymentRequest, user: dict = Depends(get_current_user),
              service: OrderService = Depends(get_order_service)):
    return service.record_payment(order_id, user_id=str(user["_id"]), method=payload.method)


@app.post("/orders/{order_id}/refund")
def refund_order(order_id: str, payload: RefundRequest, user: dict = Depends(require_admin),
                 service: OrderService = Depends(get_order_service)):
    return service.refund(order_id, amount=payload.amount, reason=payload.reason)


# Admin
@app.get("/admin/inventory/low-stock")
def low_stock(user: dict = Depends(require_admin), service: OrderService = Depends(get_order_service)):
    return {"items": service.inventory.low_stock_report()}


@app.post("/admin/coupons", status_code=201)
def create_coupon(coupon: Coupon, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    coupon.created_by = str(user["_id"])
    return PromotionStore(db).insert_coupon(coupon)


@app.put("/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdateRequest, user: dict = Depends(require_admin),
                  db: Database = Depends(get_db)):
    coupon = PromotionStore(db).update_coupon(coupon_id, payload.model_dump(exclude_unset=True))
    if coupon is None:
        raise CouponNotFound("Coupon not found")
    return coupon


@app.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    outcome = PromotionStore(db).delete_coupon(coupon_id)
    if outcome is None:
        raise CouponNotFound("Coupon not found")
    if outcome == "deactivated":
        return {"status": "success", "outcome": outcome,
                "message": "Coupon deactivated successfully (cannot delete used coupons)"}
    return {"status": "success", "outcome": outcome, "message": "Coupon deleted successfully"}


@app.get("/admin/coupons/{coupon_id}/stats")
def coupon_stats(coupon_id: str, user: dict = Depends(require_admin),
                 service: OrderService = Depends(get_order_service)):
    coupon = service.promotions.get_coupon(coupon_id)
    if coupon is None:
        raise CouponNotFound("Coupon not found")
    since = datetime.utcnow() - timedelta(days=30)
    return {
        "coupon": {"code": coupon.code, "description": coupon.description, "used_count": coupon.used_count,
                   "usage_limit": coupon.usage_limit},
        "stats": service.orders.coupon_stats(coupon.code, since),
    }


@app.patch("/admin/inventory/{product_id}/variants/{variant_id}/stock")
def set_variant_stock(product_id: str, variant_id: str, payload: StockSetRequest,
                      user: dict = Depends(require_admin), service: OrderService = Depends(get_order_service)):
    stock = service.inventory.set_stock(product_id, variant_id, payload.stock)
    return {"product_id": product_id, "variant_id": variant_id, "stock": stock}


@app.post("/admin/inventory/stock")
def bulk_set_stock(updates: List[StockUpdateIn], user: dict = Depends(require_admin),
                   service: OrderService = Depends(get_order_service)):
    return {"items": service.inventory.bulk_set_stock([u.model_dump() for u in updates])}


@app.post("/admin/flash-sales", status_code=201)
def create_flash_sale(sale: FlashSale, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    sale.created_by = str(user["_id"])
    return PromotionStore(db).insert_flash_sale(sale)


# Optional: seed sample products for demo
@app.post("/admin/seed")
def seed_products(user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    catalog = CatalogStore(db)
    samples = [
        Product(
            name="Air Stride Runner",
            slug="air-stride-runner",
            description="Lightweight daily trainer with a breathable mesh upper.",
            brand="Stride",
            category="running",
            gender="unisex",
            images=["https://images.unsplash.com/photo-1542291026-7eec264c27ff?q=80&w=1200&auto=format&fit=crop"],
            variants=[
                Variant(size="9", color="Black", color_code="#000000", sku="STR-RUN-9-BLA-001", price=99.99, stock=25),
                Variant(size="10", color="Black", color_code="#000000", sku="STR-RUN-10-BLA-002", price=99.99,
                        stock=25),
                Variant(size="10", color="Red", color_code="#C0392B", sku="STR-RUN-10-RED-003", price=104.99,
                        stock=10),
            ],
        ),
        Product(
            name="Oxford Classic",
            slug="oxford-classic",
            description="Full-grain leather oxford for the office.",
            brand="Heritage",
            category="formal",
            gender="men",
            images=["https://images.unsplash.com/photo-1614252235316-8c857d38b5f4?q=80&w=1200&auto=format&fit=crop"],
            variants=[
                Variant(size="9", color="Brown", color_code="#6E3B1E", sku="HER-FOR-9-BRO-004", price=149.0,
                        compare_at_price=179.0, stock=12),
                Variant(size="10.5", color="Brown", color_code="#6E3B1E", sku="HER-FOR-105-BRO-005", price=149.0,
                        compare_at_price=179.0, stock=8),
            ],
        ),
        Product(
            name="Trail Blazer Boot",
            slug="trail-blazer-boot",
            description="Waterproof hiking boot with a lugged outsole.",
            brand="Summit",
            category="boots",
            gender="women",
            images=["https://images.unsplash.com/photo-1520639888713-7851133b1ed0?q=80&w=1200&auto=format&fit=crop"],
            variants=[
                Variant(size="7", color="Olive", color_code="#556B2F", sku="SUM-BOO-7-OLI-006", price=169.5, stock=6),
                Variant(size="8", color="Olive", color_code="#556B2F", sku="SUM-BOO-8-OLI-007", price=169.5, stock=4),
            ],
        ),
    ]
    for p in samples:
        catalog.insert_product(p)
    return {"seeded": True, "count": len(samples)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
