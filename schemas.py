"""
Database Schemas for the Sweet Shop Ordering System

Each Pydantic model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., User -> "user").
Embedded models (addresses, cart lines, order items, ...) live inside their
owning document and have no collection of their own.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

Role = Literal["user", "admin", "delivery", "delivery-pending"]
OrderStatus = Literal["placed", "confirmed", "out_for_delivery", "delivered", "cancelled"]
ApplicationStatus = Literal["pending", "approved", "rejected"]


# ===================== User =====================

class Address(BaseModel):
    id: str = Field(..., alias="_id", description="Embedded address id")
    full_name: str
    phone: str
    address_line1: str
    address_line2: str = ""
    city: str
    postal_code: str
    country: str = "India"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: str = ""
    is_default: bool = False

    model_config = {"populate_by_name": True}


class CartLine(BaseModel):
    product_id: str = Field(..., description="Reference to product _id")
    qty: int = Field(..., ge=1)
    variant_index: int = Field(0, ge=0)


class DeliveryProfile(BaseModel):
    vehicle_type: str
    license_number: str
    areas: List[str] = []
    aadhar_card_image_url: str
    pan_card_image_url: str
    driving_license_image_url: str
    status: ApplicationStatus = "pending"


class User(BaseModel):
    username: str = Field(..., description="Unique display name")
    email: EmailStr = Field(..., description="Unique email address")
    phone: Optional[str] = Field(None, description="Unique phone number")
    phone_verified: bool = False
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = "user"
    is_admin: bool = Field(False, description="Legacy flag, mirrors role == 'admin'")
    addresses: List[dict] = []
    cart: List[dict] = []
    wishlist: List[str] = []
    delivery_profile: Optional[DeliveryProfile] = None


# ===================== Catalog =====================

class Subcategory(BaseModel):
    id: str = Field(..., alias="_id")
    name: str = Field(..., min_length=1, max_length=100)
    is_active: bool = True

    model_config = {"populate_by_name": True}


class Category(BaseModel):
    name: str = Field(..., min_length=3, max_length=50, description="Unique category name")
    is_active: bool = True
    subcategories: List[dict] = []


class Variant(BaseModel):
    type: Literal["weight", "pieces", "box"]
    value: str = Field(..., min_length=1)
    original_price: float = Field(..., ge=0)
    offer_price: Optional[float] = Field(None, ge=0)


class StockLevel(BaseModel):
    variant_index: int = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)


class InventoryLocation(BaseModel):
    location: str = Field(..., min_length=1)
    stock: List[StockLevel] = []


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    images: List[str] = []
    original_price: Optional[float] = Field(None, ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    variants: List[Variant] = []
    inventory: List[InventoryLocation] = []
    category_id: str = Field(..., description="Reference to category _id")
    subcategory: Optional[str] = None
    is_active: bool = True
    is_gi_tagged: bool = False
    is_new_arrival: bool = False
    is_most_sold: bool = False
    shelf_life: Optional[int] = Field(None, ge=0, description="Days a batch stays sellable after the product is listed")
    effective_price: Optional[float] = Field(None, description="Lowest payable price, used for sorting")


# ===================== Orders =====================

class OrderItem(BaseModel):
    product_id: str
    name: str = Field(..., description="Snapshot of the product name at purchase time")
    price: float = Field(..., ge=0, description="Snapshot of the unit price at purchase time")
    image: str = ""
    qty: int = Field(..., ge=1)
    variant_index: Optional[int] = None


class ShippingAddress(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "India"
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class PaymentResult(BaseModel):
    id: str
    status: str
    update_time: str
    email_address: Optional[str] = None


class CourierState(BaseModel):
    task_id: Optional[str] = None
    vendor_order_id: Optional[str] = None
    status_code: Optional[str] = None
    message: Optional[str] = None


class Order(BaseModel):
    user_id: str = Field(..., description="Purchaser, immutable after creation")
    order_items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: str
    payment_result: Optional[PaymentResult] = None
    items_price: float = Field(0, ge=0, description="Server-side sum of snapshot prices")
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)
    total_price: float = Field(0, ge=0)
    distance: Optional[float] = None
    nearest_store: Optional[str] = None
    stock_location: Optional[str] = Field(None, description="Inventory location stock was taken from at checkout")
    delivery_mode: Literal["delivery", "pickup"] = "delivery"
    status: OrderStatus = "placed"
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_person: Optional[str] = Field(None, description="User _id with role 'delivery'")
    eta: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    uengage: Optional[CourierState] = None


# ===================== Settings / OTP =====================

class StoreLocation(BaseModel):
    store_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    contact_number: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    is_active: bool = True


class DeliverySettings(BaseModel):
    price_per_km: float = Field(10, ge=0)
    base_charge: float = Field(50, ge=0)
    free_delivery_threshold: float = Field(500, ge=0)
    gst_percentage: float = Field(0, ge=0, le=100)
    store_locations: List[StoreLocation] = Field(..., min_length=1)


class Otp(BaseModel):
    phone: str
    code: str
    expires_at: datetime


"""
Notes:
- Order.is_paid / Order.is_delivered are not stored; orders.project_order()
  derives them from paid_at and status when an order is read.
- Every stored document also carries created_at, updated_at and version
  (see database.create_document).
"""
