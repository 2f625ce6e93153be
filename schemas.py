"""
Database Schemas

Pydantic models for the request bodies the API accepts. Stored documents
live in one MongoDB collection per entity, named in lowercase snake_case
(``product``, ``cart_item``, ``order_item`` ...).
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "admin"]
ProductSort = Literal["newest", "price_asc", "price_desc", "name_asc", "name_desc"]
StockStatus = Literal["Out of Stock", "Low Stock", "In Stock"]


# Catalog

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Product name")
    description: Optional[str] = Field(None, max_length=2000, description="Product description")
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, description="Unit price")
    category_id: int = Field(..., description="Referenced category id")
    stock_quantity: int = Field(0, ge=0, description="Units in stock")
    image_url: Optional[str] = Field(None, description="Public image URL")
    sku: Optional[str] = Field(None, max_length=64, description="Stock keeping unit")


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    category_id: Optional[int] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    sku: Optional[str] = Field(None, max_length=64)


class ProductFilter(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    category: Optional[str] = Field(None, description="Category slug")
    min_price: Optional[Decimal] = Field(None, ge=0)
    max_price: Optional[Decimal] = Field(None, ge=0)
    search: Optional[str] = None
    sort: ProductSort = "newest"
    status: Optional[StockStatus] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100, description="Display name")
    description: Optional[str] = Field(None, max_length=1000)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


# Cart

class CartItemCreate(BaseModel):
    product_id: int = Field(..., description="Referenced product id")
    quantity: int = Field(1, ge=1, description="Units to add")


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


# Addresses

class AddressCreate(BaseModel):
    address_line1: str = Field(..., min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)
    is_default: bool = False


class AddressUpdate(BaseModel):
    address_line1: Optional[str] = Field(None, min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, min_length=1, max_length=20)
    country: Optional[str] = Field(None, min_length=1, max_length=100)
    is_default: Optional[bool] = None


# Orders

class CardPayload(BaseModel):
    number: str = Field(..., min_length=12, max_length=19)
    expiry: str = Field(..., description="MM/YY")
    cvc: str = Field(..., min_length=3, max_length=4)


class OrderCreate(BaseModel):
    shipping_address_id: int = Field(..., description="Address to ship to")
    payment: Optional[CardPayload] = Field(None, description="Card details; a test card is used when omitted")


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)


# Users

class UserProfileCreate(BaseModel):
    id: str = Field(..., min_length=1, description="Identity provider user id")
    email: EmailStr
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class UserProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    role: Role = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
