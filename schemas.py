"""
Database Schemas for the shop

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.
Documents are stored with snake_case keys and rendered with camelCase
aliases; request bodies accept either spelling.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, computed_field
from pydantic.alias_generators import to_camel

Role = Literal["customer", "seller", "admin"]
PaymentMethod = Literal["card", "cash on delivery", "mobile banking", "account balance"]
OrderStatus = Literal["pending", "processing", "shipped", "sent", "delivered", "received", "cancelled"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Document(ApiModel):
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Address(ApiModel):
    full_name: str
    address: str
    city: str
    state: str = ""
    zip_code: str = ""
    country: str
    phone: Optional[str] = None


class User(Document):
    name: str
    email: EmailStr
    role: Role = "customer"
    account_balance: float = 0
    phone: Optional[str] = None


class Category(Document):
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    parent: Optional[str] = None
    is_active: bool = True


class Ratings(ApiModel):
    average: float = 0
    count: int = 0


class Product(Document):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: List[str] = []
    stock: int = Field(0, ge=0)
    sold: int = Field(0, ge=0)
    ratings: Ratings = Ratings()
    discount: float = Field(0, ge=0, le=100)
    seller_id: Optional[str] = None
    is_active: bool = True
    tags: List[str] = []


class ProductSummary(ApiModel):
    id: str
    name: str
    price: float
    images: List[str] = []


class Review(Document):
    product_id: str
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartItem(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float
    product: Optional[ProductSummary] = None


class Cart(Document):
    user_id: str
    items: List[CartItem] = []
    total_items: int = 0
    total_price: float = 0


class Wishlist(Document):
    user_id: str
    product_ids: List[str] = []
    items: List[ProductSummary] = []


class OrderItem(ApiModel):
    product_id: str
    name: str
    quantity: int
    price: float
    image: Optional[str] = None
    seller_id: Optional[str] = None


class PaymentResult(ApiModel):
    id: str
    status: str
    update_time: Optional[datetime] = None
    email_address: Optional[str] = None


class Order(Document):
    user_id: str
    user: Optional[Dict[str, Any]] = None
    order_items: List[OrderItem]
    shipping_address: Address
    payment_method: PaymentMethod
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    status: OrderStatus = "pending"
    shipped_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    seller_ids: List[str] = []

    # status is the source of truth; the delivery flags are views over it
    @computed_field(alias="isDelivered")
    @property
    def is_delivered(self) -> bool:
        return self.status in ("delivered", "received")

    @computed_field(alias="isSent")
    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None and self.status != "cancelled"

    @computed_field(alias="isReceived")
    @property
    def is_received(self) -> bool:
        return self.status == "received"


# Request bodies


class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Optional[Literal["customer", "seller"]] = None


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class UpdateDetailsRequest(ApiModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[str] = None


class UpdateRoleRequest(ApiModel):
    role: Optional[str] = None


class UpdatePasswordRequest(ApiModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class EmailRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    password: str = Field(..., min_length=6)


class VerifyOtpRequest(ApiModel):
    email: EmailStr
    otp: str


class ResetWithOtpRequest(ApiModel):
    email: EmailStr
    otp: str
    password: str = Field(..., min_length=6)


class UserCreate(ApiModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "customer"
    account_balance: float = Field(0, ge=0)


class UserUpdate(ApiModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    account_balance: Optional[float] = Field(None, ge=0)
    phone: Optional[str] = None


class ProductCreate(ApiModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: List[str] = []
    stock: int = Field(0, ge=0)
    discount: float = Field(0, ge=0, le=100)
    tags: List[str] = []


class ProductUpdate(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None


class ReviewCreate(ApiModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CategoryCreate(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    parent: Optional[str] = None


class CategoryUpdate(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    parent: Optional[str] = None
    is_active: Optional[bool] = None


class CartAddRequest(ApiModel):
    product_id: str = Field(..., validation_alias=AliasChoices("productId", "product_id", "product"))
    quantity: int = Field(1, ge=1)


class CartUpdateRequest(ApiModel):
    product_id: str = Field(..., validation_alias=AliasChoices("productId", "product_id", "product"))
    quantity: int


class CartQuantityRequest(ApiModel):
    quantity: int


class CheckoutRequest(ApiModel):
    shipping_address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None


class WishlistAddRequest(ApiModel):
    product_id: str = Field(..., validation_alias=AliasChoices("productId", "product_id", "product"))


class OrderLineRequest(ApiModel):
    product_id: str = Field(..., validation_alias=AliasChoices("productId", "product_id", "product"))
    quantity: int = Field(..., ge=1)


class OrderCreate(ApiModel):
    order_items: List[OrderLineRequest] = []
    shipping_address: Address
    payment_method: PaymentMethod
    items_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)


class OrderAdminUpdate(ApiModel):
    status: Optional[str] = None
    is_paid: Optional[bool] = None
    is_delivered: Optional[bool] = None


class OrderStatusUpdate(ApiModel):
    status: str


class PaymentProcessRequest(ApiModel):
    amount: float = Field(..., gt=0)
    order_id: str
    payment_method: Optional[str] = None


class AccountPaymentRequest(ApiModel):
    order_id: str
    amount: float = Field(..., gt=0)


class FundsRequest(ApiModel):
    amount: float = Field(..., gt=0)


class MobilePaymentInitiate(ApiModel):
    order_id: str
    amount: float = Field(..., gt=0)
    phone_number: Optional[str] = None


class MobilePaymentVerify(ApiModel):
    session_id: str
    pin: str
    amount: float = Field(..., gt=0)
