import hashlib
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Literal, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

import database
from database import create_document, get_documents, oid, serialize_doc, utcnow
from errors import AuthError, ForbiddenError, NotFoundError, PersistenceError, ValidationError, register_error_handlers
from orders import OrderWorkflow
from payments import PaymentGateway
from reviews import add_review
from schemas import (
    Category as CategorySchema,
    OrderStatus,
    PaymentInfo,
    PaymentMethod,
    Product as ProductSchema,
    ShippingAddress,
    User as UserSchema,
)

logger = logging.getLogger(__name__)

# ----------------------- Config -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
TOKEN_TTL_DAYS = 7
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "rzp_test_dummy_key")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "dummy_secret")
FRONTEND_URL = os.getenv("FRONTEND_URL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
PBKDF2_ROUNDS = 120_000

security = HTTPBearer(auto_error=False)


def setup_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------- Utils -----------------------
def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, digest = password_hash.partition("$")
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return hmac.compare_digest(candidate, digest)


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def public_user(user: dict) -> dict:
    return {k: v for k, v in serialize_doc(user).items() if k != "password_hash"}


# ----------------------- Dependencies -----------------------
def get_db(request: Request):
    db = request.app.state.db
    if db is None:
        raise PersistenceError("Database not available")
    return db


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_workflow(request: Request, db=Depends(get_db)) -> OrderWorkflow:
    return OrderWorkflow(db, request.app.state.gateway)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Not authorized, no token")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise AuthError("Invalid token payload")
    try:
        user_oid = oid(user_id)
    except ValidationError:
        raise AuthError("Invalid token payload")
    user = db["user"].find_one({"_id": user_oid})
    if not user or not user.get("is_active", True):
        raise AuthError("User not found")
    return public_user(user)


def require_role(*roles):
    def _guard(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise ForbiddenError(f"Role {user.get('role')} is not authorized to access this route")
        return user
    return _guard


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["user", "seller"] = "user"
    phone: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class CategoryBody(CategorySchema):
    pass


class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = []
    brand: Optional[str] = None
    specifications: Dict[str, str] = {}


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    brand: Optional[str] = None
    specifications: Optional[Dict[str, str]] = None
    is_active: Optional[bool] = None


class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartLine(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)


class OrderCreateBody(BaseModel):
    order_items: List[CartLine] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_info: Optional[PaymentInfo] = None


class OrderStatusBody(BaseModel):
    order_status: OrderStatus


class PaymentOrderBody(BaseModel):
    amount: float = Field(..., allow_inf_nan=False)
    currency: str = "INR"


class PaymentVerifyBody(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RefundBody(BaseModel):
    payment_id: str
    amount: Optional[float] = Field(None, allow_inf_nan=False)


router = APIRouter(prefix="/api")


# ----------------------- Health -----------------------
@router.get("/health")
def health(request: Request):
    response = {
        "status": "OK",
        "database": "Not Available",
        "collections": [],
    }
    db = request.app.state.db
    try:
        if db is not None:
            response["database"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@router.post("/auth/register", status_code=201)
def register(body: RegisterBody, db=Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise ValidationError("Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        role=body.role,
        phone=body.phone,
    )
    user_id = create_document(db, "user", user)
    token = create_token({"id": user_id, "role": body.role})
    logger.info("Registered %s %s", body.role, user_id)
    return {"success": True, "token": token, "user": public_user(db["user"].find_one({"_id": oid(user_id)}))}


@router.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        raise AuthError("Invalid credentials")
    if not user.get("is_active", True):
        raise ForbiddenError("Account disabled")
    token = create_token({"id": str(user["_id"]), "role": user.get("role", "user")})
    return {"success": True, "token": token, "user": public_user(user)}


@router.get("/auth/me")
def me(user=Depends(get_current_user)):
    return user


# ----------------------- Categories -----------------------
@router.get("/categories")
def list_categories(db=Depends(get_db)):
    return [serialize_doc(c) for c in db["category"].find().sort("name", 1)]


@router.post("/categories", status_code=201)
def create_category(body: CategoryBody, user=Depends(require_role("admin")), db=Depends(get_db)):
    if db["category"].find_one({"name": body.name}):
        raise ValidationError("Category already exists")
    category_id = create_document(db, "category", body)
    return serialize_doc(db["category"].find_one({"_id": oid(category_id)}))


# ----------------------- Products -----------------------
def _owned_product(db, product_id: str, user: dict) -> dict:
    product = db["product"].find_one({"_id": oid(product_id)})
    if not product:
        raise NotFoundError("Product not found")
    if user.get("role") != "admin" and product.get("seller") != user["id"]:
        raise ForbiddenError("Not authorized to modify this product")
    return product


def _check_category(db, category_id: str):
    if not db["category"].find_one({"_id": oid(category_id)}):
        raise ValidationError("Invalid category")


@router.post("/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_role("seller", "admin")), db=Depends(get_db)):
    _check_category(db, body.category)
    product = ProductSchema(**body.model_dump(), seller=user["id"])
    product_id = create_document(db, "product", product)
    logger.info("Product %s created by %s", product_id, user["id"])
    return serialize_doc(db["product"].find_one({"_id": oid(product_id)}))


@router.get("/products/seller/my-products")
def seller_products(user=Depends(require_role("seller", "admin")), db=Depends(get_db)):
    items = get_documents(db, "product", {"seller": user["id"]})
    return [serialize_doc(i) for i in items]


@router.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    item = db["product"].find_one({"_id": oid(product_id), "is_active": True})
    if not item:
        raise NotFoundError("Product not found")
    return serialize_doc(item)


@router.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_role("seller", "admin")), db=Depends(get_db)):
    product = _owned_product(db, product_id, user)
    update = body.model_dump(exclude_none=True)
    if "category" in update:
        _check_category(db, update["category"])
    update["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return serialize_doc(db["product"].find_one({"_id": product["_id"]}))


@router.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_role("seller", "admin")), db=Depends(get_db)):
    product = _owned_product(db, product_id, user)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    return {"success": True, "message": "Product removed"}


@router.post("/products/{product_id}/reviews", status_code=201)
def create_review(product_id: str, body: ReviewBody, user=Depends(get_current_user), db=Depends(get_db)):
    product = add_review(db, product_id, user, body.rating, body.comment)
    return serialize_doc(product)


# ----------------------- Orders -----------------------
@router.post("/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    order = workflow.place_order(
        user,
        [line.model_dump() for line in body.order_items],
        body.shipping_address.model_dump(),
        body.payment_method,
        body.payment_info.model_dump() if body.payment_info else None,
    )
    return serialize_doc(order)


@router.get("/orders")
def my_orders(user=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return [serialize_doc(o) for o in workflow.list_orders_for_buyer(user["id"])]


@router.get("/orders/seller/my-orders")
def seller_orders(user=Depends(require_role("seller", "admin")), workflow: OrderWorkflow = Depends(get_workflow)):
    return [serialize_doc(o) for o in workflow.list_orders_for_seller(user["id"])]


@router.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return serialize_doc(workflow.get_order(order_id, user))


@router.put("/orders/{order_id}")
def update_order_status(
    order_id: str,
    body: OrderStatusBody,
    user=Depends(require_role("seller", "admin")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    return serialize_doc(workflow.update_order_status(order_id, body.order_status, user))


# ----------------------- Payment -----------------------
@router.post("/payment/create-order")
def create_payment_order(body: PaymentOrderBody, user=Depends(get_current_user), gateway: PaymentGateway = Depends(get_gateway)):
    order = gateway.create_order(body.amount, body.currency)
    return {"success": True, "order": order, "key": gateway.key_id}


@router.post("/payment/verify")
def verify_payment(body: PaymentVerifyBody, user=Depends(get_current_user), gateway: PaymentGateway = Depends(get_gateway)):
    if not gateway.verify_signature(body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature):
        logger.warning("Invalid payment signature for gateway order %s from %s", body.razorpay_order_id, user["id"])
        raise ValidationError("Invalid payment signature")
    return {"success": True, "message": "Payment verified successfully", "payment_id": body.razorpay_payment_id}


@router.get("/payment/key")
def payment_key(gateway: PaymentGateway = Depends(get_gateway)):
    return {"success": True, "key": gateway.key_id}


@router.post("/payment/refund")
def refund_payment(
    body: RefundBody,
    user=Depends(require_role("seller", "admin")),
    gateway: PaymentGateway = Depends(get_gateway),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    refund = gateway.refund(body.payment_id, body.amount)
    if body.amount is None:
        workflow.mark_refunded(body.payment_id)
    return {"success": True, "message": "Refund processed successfully", "refund": refund}


# ----------------------- Seed Demo Data -----------------------
DEMO_CATEGORIES = [
    {"name": "Electronics", "description": "Latest electronic gadgets and devices"},
    {"name": "Fashion & Apparel", "description": "Trendy clothing and accessories"},
    {"name": "Home & Kitchen", "description": "Everything for your home and kitchen"},
    {"name": "Books & Stationery", "description": "Books, office supplies, and stationery"},
    {"name": "Sports & Fitness", "description": "Sports equipment and fitness gear"},
    {"name": "Beauty & Personal Care", "description": "Beauty products and personal care items"},
    {"name": "Toys & Games", "description": "Fun toys and games for all ages"},
    {"name": "Automotive", "description": "Car accessories and automotive parts"},
]


@router.post("/seed")
def seed(db=Depends(get_db)):
    if db["category"].count_documents({}) > 0:
        return {"seeded": False, "message": "Categories already exist"}
    for c in DEMO_CATEGORIES:
        create_document(db, "category", CategorySchema(**c))
    # create admin user if none
    if ADMIN_PASSWORD and db["user"].count_documents({"role": "admin"}) == 0:
        admin = UserSchema(name="Admin", email="admin@shop.com", password_hash=hash_password(ADMIN_PASSWORD), role="admin")
        create_document(db, "user", admin)
    return {"seeded": True, "categories": db["category"].count_documents({})}


# ----------------------- App -----------------------
def create_app(db=None, gateway: Optional[PaymentGateway] = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title="Marketplace API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL] if FRONTEND_URL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.state.db = db if db is not None else database.db
    if app.state.db is not None:
        database.ensure_indexes(app.state.db)
    app.state.gateway = gateway or PaymentGateway(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)

    @app.get("/")
    def root():
        return {"success": True, "message": "Marketplace API running", "version": "1.0.0"}

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
