"""
Database Schemas for the Crafters Marketplace

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name:
- User -> "user"
- Crafter -> "crafter"
- Product -> "product"
- Category -> "category"
- Order -> "order"
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    customer = "customer"
    crafter = "crafter"
    admin = "admin"


class ProductCategory(str, Enum):
    jewelry = "Jewelry"
    pottery = "Pottery"
    textiles = "Textiles"
    woodwork = "Woodwork"
    art = "Art"
    other = "Other"


class DeliveryOption(str, Enum):
    pickup = "pickup"
    delivery = "delivery"
    shipping = "shipping"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    refunded = "refunded"


class User(BaseModel):
    clerk_id: str
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    role: Role = Role.customer
    onboarding_complete: bool = False


class Crafter(BaseModel):
    name: str = Field(..., max_length=100)
    specialty: str = Field(..., max_length=200)
    location: str = Field(..., max_length=100)
    bio: str = Field(..., max_length=1000)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    user_id: Optional[str] = None
    verified: bool = False
    products_count: int = 0


class Product(BaseModel):
    name: str = Field(..., max_length=200)
    price: float = Field(..., ge=0)
    crafter_id: str
    crafter_name: str
    category: ProductCategory
    description: str = Field(..., max_length=2000)
    materials: str
    dimensions: Optional[str] = None
    in_stock: bool = True
    featured: bool = False
    images: List[str] = []


class Category(BaseModel):
    name: str
    slug: str
    description: str
    icon: str = "✨"
    display_order: int = 0
    is_active: bool = True


class DeliveryAddress(BaseModel):
    street: str
    city: str
    postcode: str


class OrderItem(BaseModel):
    """Line item frozen at purchase time; never re-read from the product."""
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    crafter_id: str
    crafter_name: str


class Order(BaseModel):
    order_number: str
    order_date: str
    order_sequence: int
    customer_id: Optional[str] = None
    customer_email: EmailStr
    customer_name: str
    items: List[OrderItem]
    subtotal: float
    delivery_fee: float = 0
    total: float
    delivery_option: DeliveryOption
    delivery_address: Optional[DeliveryAddress] = None
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    cart_signature: str
