from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

class OrderStatus(str, Enum):
    """Fulfilment status, independent from PaymentStatus."""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    BANK = "bank"
    CASH_ON_DELIVERY = "cash_on_delivery"

class Base(DeclarativeBase):
    pass

class Order(Base):
    """Checkout order.

    Orders form a tagged union over ``payment_method`` (single-table
    inheritance): each subclass maps only the columns its payment method uses.
    """
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Null for guest checkouts
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    # subtotal + tax + shipping, fixed at creation
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value)
    payment_method: Mapped[str] = mapped_column(String(30))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    items: Mapped[list["OrderItem"]] = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    __mapper_args__ = {"polymorphic_on": "payment_method"}

class MpesaOrder(Order):
    # CheckoutRequestID of the push; set once, the only key callbacks match on
    mpesa_request_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    mpesa_phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentMethod.MPESA.value}

class CardOrder(Order):
    card_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentMethod.CARD.value}

class BankTransferOrder(Order):
    bank_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentMethod.BANK.value}

class CashOnDeliveryOrder(Order):
    __mapper_args__ = {"polymorphic_identity": PaymentMethod.CASH_ON_DELIVERY.value}

ORDER_CLASSES: dict[PaymentMethod, type[Order]] = {
    PaymentMethod.MPESA: MpesaOrder,
    PaymentMethod.CARD: CardOrder,
    PaymentMethod.BANK: BankTransferOrder,
    PaymentMethod.CASH_ON_DELIVERY: CashOnDeliveryOrder,
}

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    book_id: Mapped[int]
    title: Mapped[str] = mapped_column(String(255))
    quantity: Mapped[int]
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    order: Mapped[Order] = relationship("Order", back_populates="items")

class Transaction(Base):
    """Append-only ledger entry, written once per successful payment."""
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(primary_key=True)
    # Gateway receipt number; natural dedupe key
    transaction_id: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default="completed")
    payment_method: Mapped[str] = mapped_column(String(30))
    gateway: Mapped[str] = mapped_column(String(30))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
