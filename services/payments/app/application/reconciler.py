"""Turning gateway callbacks into order and ledger state.

Callbacks are delivered at least once and possibly out of order, so every
write here is safe to repeat:

* the order update is a conditional single-row UPDATE that only moves
  ``pending`` to a terminal state (or re-applies the same terminal state), so
  a paid order can never be failed by a late callback and vice versa;
* the ledger insert is keyed by the gateway receipt number, and a unique
  constraint violation on it means "already recorded".
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core_settings import Settings
from app.domain.errors import (
    CorrelationNotFound,
    DuplicateLedgerEntry,
    MalformedCallback,
    PersistenceError,
)
from app.domain.models import MpesaOrder, OrderStatus, PaymentMethod, PaymentStatus, Transaction
from shared.core import get_logger, set_request_context
from .schemas import StkCallback, StkCallbackEnvelope

logger = get_logger(__name__)

SUCCESS_CODE = 0
RECEIPT_ITEM = "MpesaReceiptNumber"
PHONE_ITEM = "PhoneNumber"

class Outcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    # Callback contradicts a terminal state already recorded
    IGNORED = "ignored"

@dataclass
class ReconcileResult:
    outcome: Outcome
    order_id: int
    checkout_request_id: str
    receipt_number: Optional[str] = None
    ledger_created: bool = False

def parse_callback(body: Any) -> StkCallback:
    try:
        return StkCallbackEnvelope.model_validate(body).body.stk_callback
    except ValidationError as e:
        raise MalformedCallback(f"Unexpected callback shape: {e.error_count()} error(s)") from e

def metadata_map(callback: StkCallback) -> Dict[str, Any]:
    """Index CallbackMetadata.Item by Name; item order is not guaranteed."""
    if callback.metadata is None:
        return {}
    return {item.name: item.value for item in callback.metadata.items}

class CallbackReconciler:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def reconcile(self, body: Any) -> ReconcileResult:
        callback = parse_callback(body)
        set_request_context(correlation_id=callback.checkout_request_id)
        logger.info(
            "STK callback received",
            extra={'extra_fields': {
                'checkout_request_id': callback.checkout_request_id,
                'result_code': callback.result_code,
                'result_desc': callback.result_desc,
            }},
        )

        order = self._find_order(callback.checkout_request_id)

        if callback.result_code == SUCCESS_CODE:
            return self._apply_success(order, callback)
        return self._apply_failure(order, callback)

    def _find_order(self, checkout_request_id: str) -> MpesaOrder:
        try:
            order = self.db.scalars(
                select(MpesaOrder).where(MpesaOrder.mpesa_request_id == checkout_request_id)
            ).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Order lookup failed: {e}") from e
        if order is None:
            logger.error(
                "Callback for unknown CheckoutRequestID",
                extra={'extra_fields': {'checkout_request_id': checkout_request_id}},
            )
            raise CorrelationNotFound(checkout_request_id)
        return order

    def _transition(self, checkout_request_id: str, target: PaymentStatus, values: Dict[str, Any]) -> bool:
        """Move pending (or already-``target``) to ``target``. False if the order sits in the other terminal state."""
        stmt = (
            update(MpesaOrder)
            .where(
                MpesaOrder.mpesa_request_id == checkout_request_id,
                MpesaOrder.payment_status.in_([PaymentStatus.PENDING.value, target.value]),
            )
            .values(payment_status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Order update failed: {e}") from e
        return result.rowcount > 0

    def _apply_success(self, order: MpesaOrder, callback: StkCallback) -> ReconcileResult:
        metadata = metadata_map(callback)
        missing = [name for name in (RECEIPT_ITEM, PHONE_ITEM) if metadata.get(name) in (None, "")]
        if missing:
            raise MalformedCallback(f"Success callback missing metadata: {', '.join(missing)}")
        receipt = str(metadata[RECEIPT_ITEM])
        phone = str(metadata[PHONE_ITEM])

        applied = self._transition(callback.checkout_request_id, PaymentStatus.PAID, {
            "status": OrderStatus.PROCESSING.value,
            "mpesa_receipt_number": receipt,
            "mpesa_phone_number": phone,
        })
        if not applied:
            logger.error(
                "Payment received for an order already marked failed; manual refund or review needed",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'order_number': order.order_number,
                    'receipt_number': receipt,
                    'phone_number': phone,
                }},
            )
            return ReconcileResult(Outcome.IGNORED, order.id, callback.checkout_request_id, receipt)

        try:
            created = self._record_ledger_entry(order, receipt)
        except DuplicateLedgerEntry:
            created = False
            logger.info(
                "Duplicate callback; ledger entry already recorded",
                extra={'extra_fields': {'receipt_number': receipt}},
            )

        logger.info(
            "Order paid",
            extra={'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'receipt_number': receipt,
                'ledger_created': created,
            }},
        )
        return ReconcileResult(Outcome.PAID, order.id, callback.checkout_request_id, receipt, created)

    def _record_ledger_entry(self, order: MpesaOrder, receipt: str) -> bool:
        entry = Transaction(
            transaction_id=receipt,
            amount=order.total_amount,
            currency=self.settings.MPESA_CURRENCY,
            status="completed",
            payment_method=PaymentMethod.MPESA.value,
            gateway="mpesa",
            user_id=order.user_id,
            order_id=order.id,
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self._ledger_entry_exists(receipt):
                raise DuplicateLedgerEntry(receipt) from e
            raise PersistenceError(f"Ledger insert failed: {e}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            # The order update above is committed and stays; the gateway retry re-runs this insert
            raise PersistenceError(f"Ledger insert failed: {e}") from e
        return True

    def _ledger_entry_exists(self, receipt: str) -> bool:
        return self.db.scalars(
            select(Transaction.id).where(Transaction.transaction_id == receipt)
        ).first() is not None

    def _apply_failure(self, order: MpesaOrder, callback: StkCallback) -> ReconcileResult:
        applied = self._transition(callback.checkout_request_id, PaymentStatus.FAILED, {
            "status": OrderStatus.FAILED.value,
        })
        if not applied:
            logger.warning(
                "Failure callback for a paid order ignored",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'result_code': callback.result_code,
                }},
            )
            return ReconcileResult(Outcome.IGNORED, order.id, callback.checkout_request_id)

        logger.info(
            "Order payment failed",
            extra={'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'result_code': callback.result_code,
                'result_desc': callback.result_desc,
            }},
        )
        return ReconcileResult(Outcome.FAILED, order.id, callback.checkout_request_id)

    def apply_failure_result(self, order: MpesaOrder, result_code: int, result_desc: str) -> ReconcileResult:
        """Fail a pending order from a definitive gateway query answer."""
        callback = StkCallback.model_validate({
            "CheckoutRequestID": order.mpesa_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc,
        })
        return self._apply_failure(order, callback)
