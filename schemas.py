"""
Database Schemas for the stylist marketplace

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- Product -> "product"
- Cart -> "cart"
- Wishlist -> "wishlist"
- Order -> "order"
- Transaction -> "transaction"
- Notification -> "notification"
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

PaymentMethod = Literal["wallet", "cash_on_delivery", "credit_card", "bank_transfer"]
PaymentStatus = Literal["pending", "partially_paid", "completed", "failed", "refunded"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
ItemStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "returned"]
OrderType = Literal["standard", "custom"]
TransactionType = Literal["credit", "debit"]
TransactionStatus = Literal["pending", "completed", "failed", "reversed"]

GATEWAY_METHODS = ("credit_card", "bank_transfer")


class User(BaseModel):
    """Users collection schema"""
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    role: Literal["user", "stylist", "admin"] = Field("user", description="Role: user, stylist or admin")
    wallet_balance: float = Field(0, ge=0, description="Wallet balance, mutated only through the ledger")


class Product(BaseModel):
    """Products collection schema"""
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock")
    stylist_id: str = Field(..., description="Owning stylist user id")
    category: Optional[str] = Field(None, description="Product category")
    image_url: Optional[str] = Field(None, description="Primary image URL")


class CartItem(BaseModel):
    product_id: str = Field(..., description="ID of the product")
    quantity: int = Field(1, ge=1, description="Quantity of the product")
    price: float = Field(..., ge=0, description="Unit price snapshotted when the line was added")


class Cart(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    items: List[CartItem] = Field(default_factory=list, description="List of cart items")
    total_price: float = Field(0, ge=0)
    total_items: int = Field(0, ge=0)


class WishlistItem(BaseModel):
    product_id: str
    added_at: datetime


class Wishlist(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    items: List[WishlistItem] = Field(default_factory=list)


class Measurements(BaseModel):
    """Body measurements for custom (tailored) orders"""
    bust_or_chest: Optional[float] = None
    waist: Optional[float] = None
    hips: Optional[float] = None
    upper_bust: Optional[float] = None
    upper_hip: Optional[float] = None
    neck: Optional[float] = None
    shoulder: Optional[float] = None
    thigh: Optional[float] = None
    arm: Optional[float] = None
    wrist: Optional[float] = None
    front_bodice: Optional[float] = None
    hip_to_knee: Optional[float] = None
    inseam: Optional[float] = None
    hip_to_ankle: Optional[float] = None
    biceps: Optional[float] = None
    calf: Optional[float] = None


class ShippingAddress(BaseModel):
    country: str
    state: str
    city: str
    street: str
    postal_code: str
    home_address: str
    phone: str


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price_at_purchase: float = Field(..., ge=0)
    stylist_id: str
    status: ItemStatus = "pending"
    order_type: OrderType = "standard"
    measurements: Optional[Measurements] = None
    material_sample: Optional[str] = None
    payment_plan: Literal["full", "partial"] = "full"


class PaymentInfo(BaseModel):
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    amount_paid: float = Field(0, ge=0)
    balance_due: float = Field(0, ge=0)
    transaction_id: Optional[str] = Field(None, description="Ledger reference of the latest payment attempt")
    reference: Optional[str] = None
    payment_date: Optional[datetime] = None


class Order(BaseModel):
    customer_id: str
    order_type: OrderType = "standard"
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_info: PaymentInfo
    items_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)
    total_price: float = Field(0, ge=0)
    order_status: OrderStatus = "pending"
    stock_committed: bool = Field(False, description="Whether product stock was decremented for this order")
    stock_shortfall: List[Dict[str, Any]] = Field(default_factory=list)
    delivered_at: Optional[datetime] = None


class Transaction(BaseModel):
    user_id: str
    amount: float = Field(..., gt=0)
    type: TransactionType
    previous_balance: float = 0
    current_balance: float = 0
    reference: str = Field(..., description="Globally unique payment reference, the idempotency key")
    description: Optional[str] = None
    status: TransactionStatus = "completed"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    recipient: str
    type: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
