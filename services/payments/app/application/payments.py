"""Starting an M-Pesa payment: validate, push, correlate."""

import math
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core_settings import Settings
from app.domain.errors import (
    CorrelationWriteError,
    OrderNotFound,
    PaymentAlreadyInFlight,
    PaymentValidationError,
)
from app.domain.models import MpesaOrder, Order, PaymentStatus
from app.infrastructure.mpesa import DarajaClient
from shared.core import get_logger

logger = get_logger(__name__)

MPESA_PHONE_RE = re.compile(r"^254[17]\d{8}$")

def normalize_phone(phone: str) -> str:
    """Convert a Kenyan mobile number to the gateway's 2547XXXXXXXX form."""
    cleaned = re.sub(r"[\s\-()]", "", phone or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif len(cleaned) == 9 and cleaned[:1] in ("7", "1"):
        cleaned = "254" + cleaned
    return cleaned

def validate_phone(phone: str) -> str:
    normalized = normalize_phone(phone)
    if not MPESA_PHONE_RE.match(normalized):
        raise PaymentValidationError("Enter a valid Safaricom number, e.g. 0712 345 678.")
    return normalized

@dataclass
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    customer_message: Optional[str] = None

class PaymentInitiator:
    """Turns a checkout intent into exactly one STK push request."""

    def __init__(self, settings: Settings, gateway: DarajaClient):
        self.settings = settings
        self.gateway = gateway

    def validate_amount(self, amount) -> int:
        # bool is an int subclass; the gateway only takes whole currency units
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PaymentValidationError("Amount must be a whole number of shillings.")
        if amount <= 0:
            raise PaymentValidationError("Amount must be greater than zero.")
        if amount < self.settings.MPESA_MIN_AMOUNT or amount > self.settings.MPESA_MAX_AMOUNT:
            raise PaymentValidationError(
                f"M-Pesa payments must be between {self.settings.MPESA_MIN_AMOUNT} "
                f"and {self.settings.MPESA_MAX_AMOUNT} {self.settings.MPESA_CURRENCY}."
            )
        return amount

    def initiate(self, amount: int, payer_phone: str, account_reference: str) -> StkPushResult:
        amount = self.validate_amount(amount)
        phone = validate_phone(payer_phone)
        if not account_reference:
            raise PaymentValidationError("Missing order reference.")

        payload = self.gateway.build_stk_push_payload(amount, phone, account_reference)
        data = self.gateway.stk_push(payload)
        return StkPushResult(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            customer_message=data.get("CustomerMessage"),
        )

class OrderCorrelator:
    """Stores the push's correlation id on the order, once."""

    def __init__(self, db: Session):
        self.db = db

    def attach(self, order_id: int, checkout_request_id: str) -> None:
        stmt = (
            update(MpesaOrder)
            .where(
                MpesaOrder.id == order_id,
                MpesaOrder.mpesa_request_id.is_(None),
                MpesaOrder.payment_status == PaymentStatus.PENDING.value,
            )
            .values(mpesa_request_id=checkout_request_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.critical(
                "STK push sent but correlation id not stored; payment may be unreconcilable",
                exc_info=True,
                extra={'extra_fields': {
                    'order_id': order_id,
                    'checkout_request_id': checkout_request_id,
                }},
            )
            raise CorrelationWriteError(str(e), order_id, checkout_request_id) from e

        if result.rowcount == 0:
            logger.critical(
                "STK push sent for an order that already has a payment in flight",
                extra={'extra_fields': {
                    'order_id': order_id,
                    'checkout_request_id': checkout_request_id,
                }},
            )
            raise PaymentAlreadyInFlight(f"Order {order_id} already has a payment request")

def payable_amount(total: Decimal) -> int:
    # M-Pesa takes whole shillings; round up so the order is never underpaid
    return int(math.ceil(total))

class CheckoutService:
    """Initiate then correlate; the Correlator write happens before the push is reported as in flight."""

    def __init__(self, db: Session, initiator: PaymentInitiator):
        self.db = db
        self.initiator = initiator
        self.correlator = OrderCorrelator(db)

    def start_mpesa_payment(self, order_id: int, phone_number: str) -> StkPushResult:
        order = self.db.get(Order, order_id)
        if not isinstance(order, MpesaOrder):
            raise OrderNotFound(f"M-Pesa order {order_id} not found")
        if order.payment_status != PaymentStatus.PENDING.value or order.mpesa_request_id:
            raise PaymentAlreadyInFlight(f"Order {order.order_number} already has a payment request")

        result = self.initiator.initiate(
            payable_amount(order.total_amount),
            phone_number,
            order.order_number,
        )
        self.correlator.attach(order.id, result.checkout_request_id)
        logger.info(
            "M-Pesa payment in flight",
            extra={'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'checkout_request_id': result.checkout_request_id,
            }},
        )
        return result
