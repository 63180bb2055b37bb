from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from app.domain.models import OrderStatus, PaymentMethod, PaymentStatus

class OrderItemCreate(BaseModel):
    book_id: int
    title: str
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)

class OrderCreate(BaseModel):
    order_number: Optional[str] = None
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.MPESA
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_amount: Decimal = Field(default=Decimal("0"), ge=0)
    items: list[OrderItemCreate] = Field(min_length=1)

class OrderUpdate(BaseModel):
    # Payment fields are owned by the reconciler and deliberately absent
    status: OrderStatus

class OrderItemRead(BaseModel):
    id: int
    book_id: int
    title: str
    quantity: int
    unit_price: float
    class Config:
        from_attributes = True

class OrderRead(BaseModel):
    id: int
    order_number: str
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    payment_method: str
    subtotal: float
    tax_amount: float
    shipping_amount: float
    total_amount: float
    status: str
    payment_status: str
    # Only populated for M-Pesa orders
    mpesa_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    mpesa_phone_number: Optional[str] = None
    created_at: datetime
    items: list[OrderItemRead]
    class Config:
        from_attributes = True

class PaymentStatusRead(BaseModel):
    order_id: int
    payment_status: PaymentStatus
    status: OrderStatus
    # True once a push is in flight and its callback has not landed yet
    awaiting_callback: bool = False

class TransactionRead(BaseModel):
    id: int
    transaction_id: str
    amount: float
    currency: str
    status: str
    payment_method: str
    gateway: str
    user_id: Optional[str] = None
    order_id: int
    created_at: datetime
    class Config:
        from_attributes = True

class StkPushCreate(BaseModel):
    order_id: int
    phone_number: str

class StkPushRead(BaseModel):
    order_id: int
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    customer_message: Optional[str] = None

# Daraja STK callback body:
# {"Body": {"stkCallback": {"ResultCode": 0, ..., "CallbackMetadata": {"Item": [...]}}}}

class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    # Some items (e.g. Balance) arrive without a value
    value: Optional[Union[int, float, str]] = Field(default=None, alias="Value")

class CallbackMetadata(BaseModel):
    items: list[CallbackItem] = Field(default_factory=list, alias="Item")

class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

class StkCallbackBody(BaseModel):
    stk_callback: StkCallback = Field(alias="stkCallback")

class StkCallbackEnvelope(BaseModel):
    body: StkCallbackBody = Field(alias="Body")
