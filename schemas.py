"""
Database Schemas for the Marketplace

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Embedded models (Review, OrderItem, ShippingAddress, PaymentInfo, Ratings)
live inside their parent document.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "seller", "admin"]
PaymentMethod = Literal["online", "cod"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "refunded"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Salted password hash")
    role: Role = "user"
    phone: Optional[str] = None
    is_active: bool = True


class Category(BaseModel):
    name: str
    description: Optional[str] = None
    image: Optional[str] = None


class Ratings(BaseModel):
    average: float = Field(0.0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Review(BaseModel):
    user: str = Field(..., description="Reviewer user id")
    name: str = Field(..., description="Reviewer display name")
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category: str = Field(..., description="Category id")
    seller: str = Field(..., description="Owning seller user id")
    stock: int = Field(0, ge=0)
    images: List[str] = []
    ratings: Ratings = Ratings()
    reviews: List[Review] = []
    brand: Optional[str] = None
    specifications: Dict[str, str] = {}
    is_active: bool = True


class OrderItem(BaseModel):
    product: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None
    seller: str


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    phone: str


class PaymentInfo(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class Order(BaseModel):
    user: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_info: Optional[PaymentInfo] = None
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    items_price: float
    shipping_price: float
    tax_price: float
    total_price: float
    delivered_at: Optional[datetime] = None
