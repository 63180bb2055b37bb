from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from app.domain.models import (
    ORDER_CLASSES,
    MpesaOrder,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Transaction,
)
from app.domain.errors import OrderConflict, OrderNotFound
from .schemas import OrderCreate, OrderUpdate, PaymentStatusRead
from datetime import datetime
from decimal import Decimal
from typing import Optional
import secrets

TWO_PLACES = Decimal("0.01")

# Fulfilment states an M-Pesa order may only reach once paid
REQUIRES_PAYMENT = {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.COMPLETED}
CLOSED_STATUSES = {OrderStatus.CANCELLED.value, OrderStatus.FAILED.value}

class OrderService:
    def __init__(self, db: Session):
        self.db = db

    def _generate_order_number(self) -> str:
        """Order number in format ORD-YYYYMMDD-XXXXXX."""
        return f"ORD-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"

    def list(self):
        return self.db.scalars(
            select(Order).options(selectinload(Order.items)).order_by(Order.id.desc())
        ).all()

    def get(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def require(self, order_id: int) -> Order:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def create(self, data: OrderCreate) -> Order:
        subtotal = sum((i.unit_price * i.quantity for i in data.items), Decimal("0")).quantize(TWO_PLACES)
        tax = data.tax_amount.quantize(TWO_PLACES)
        shipping = data.shipping_amount.quantize(TWO_PLACES)

        order_cls = ORDER_CLASSES[data.payment_method]
        order = order_cls(
            order_number=data.order_number or self._generate_order_number(),
            user_id=data.user_id,
            guest_name=data.guest_name,
            guest_email=data.guest_email,
            guest_phone=data.guest_phone,
            subtotal=subtotal,
            tax_amount=tax,
            shipping_amount=shipping,
            # Never recomputed after this point
            total_amount=subtotal + tax + shipping,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        for item in data.items:
            order.items.append(OrderItem(
                book_id=item.book_id,
                title=item.title,
                quantity=item.quantity,
                unit_price=item.unit_price,
            ))
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)
        return order

    def update_status(self, order_id: int, data: OrderUpdate) -> Order:
        """Admin fulfilment update. Payment fields never change here."""
        order = self.require(order_id)
        if order.status in CLOSED_STATUSES:
            raise OrderConflict(f"Order {order.order_number} is {order.status}")
        if (
            isinstance(order, MpesaOrder)
            and data.status in REQUIRES_PAYMENT
            and order.payment_status != PaymentStatus.PAID.value
        ):
            raise OrderConflict(f"Order {order.order_number} is not paid")

        order.status = data.status.value
        self.db.commit()
        self.db.refresh(order)
        return order

    def payment_status(self, order_id: int) -> PaymentStatusRead:
        # Fresh read; pollers must observe the reconciler's committed write
        self.db.expire_all()
        order = self.require(order_id)
        awaiting = (
            isinstance(order, MpesaOrder)
            and order.mpesa_request_id is not None
            and order.payment_status == PaymentStatus.PENDING.value
        )
        return PaymentStatusRead(
            order_id=order.id,
            payment_status=order.payment_status,
            status=order.status,
            awaiting_callback=awaiting,
        )

    def list_transactions(self):
        return self.db.scalars(select(Transaction).order_by(Transaction.id.desc())).all()
