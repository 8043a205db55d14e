"""
Database Schemas for the Royal Jewels storefront

Each Pydantic model correlates to a MongoDB collection. The collection name is the lowercase of the class name.
- User -> "user"
- Product -> "product"
- Cart -> "cart"
- Order -> "order"
- Investment -> "investment"
- GiftCard -> "giftcard"

Request bodies use the camelCase field names the frontend sends (productId, sessionId, ...).
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Metal = Literal["Gold", "Silver"]
OrderStatus = Literal["Pending", "Processing", "Completed", "Cancelled"]

ORDER_STATUSES = ("Pending", "Processing", "Completed", "Cancelled")
METALS = ("Gold", "Silver")


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    address: str = Field("", description="Shipping address")
    phone: str = Field("", description="Contact number")
    gold_balance: float = Field(0.0, ge=0, description="Digital gold held, in grams")
    silver_balance: float = Field(0.0, ge=0, description="Digital silver held, in grams")
    is_active: bool = Field(True, description="Counts towards active users")
    is_banned: bool = Field(False, description="Set by an admin")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    description: str = Field("", description="Product description")
    price: float = Field(..., ge=0, description="Price in INR")
    weight: float = Field(0.0, ge=0, description="Weight in grams")
    category: str = Field(..., description="Product category")
    image: Optional[str] = Field(None, description="Image URL")


class CartLine(BaseModel):
    id: str = Field(..., description="Line id, stable across quantity updates")
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str = Field(..., description="Owner, one cart per user")
    items: List[CartLine] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured at order time")


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_value: float = Field(..., ge=0)
    status: OrderStatus = "Pending"
    payment_session_id: str = Field(..., description="Session the customer is currently sent to")
    payment_session_ids: List[str] = Field(default_factory=list, description="Every session issued for this order")
    checkout_url: Optional[str] = None


class Investment(BaseModel):
    user_id: str
    type: Metal
    amount: float = Field(..., description="Grams; positive for a buy, negative for a sell")
    price: float = Field(..., ge=0, description="Amount paid or received")


class GiftCard(BaseModel):
    code: str
    amount: float
    user_id: Optional[str] = Field(None, description="Issuing user, empty for admin issues")
    is_redeemed: bool = False
    expires_at: datetime


# Request models
class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    address: str = ""
    phone: str = ""


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AdminLoginRequest(BaseModel):
    username: str
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class AddToCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    quantity: int = 1


class QuantityUpdate(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    gift_card_code: Optional[str] = Field(None, alias="giftCardCode")


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")


class TradeRequest(BaseModel):
    type: str
    amount: float


class GiftCardPurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float
    recipient_email: Optional[EmailStr] = Field(None, alias="recipientEmail")


class GiftCardVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    amount: Optional[float] = None
    recipient_email: Optional[EmailStr] = Field(None, alias="recipientEmail")


class RedeemRequest(BaseModel):
    code: str


class StatusUpdate(BaseModel):
    status: OrderStatus


class RatesUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gold_rate: float = Field(..., gt=0, alias="goldRate")
    silver_rate: float = Field(..., gt=0, alias="silverRate")
    expected_version: Optional[int] = Field(None, alias="expectedVersion")


class GiftCardIssueRequest(BaseModel):
    amount: float
