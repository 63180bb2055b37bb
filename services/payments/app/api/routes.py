from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from app.infrastructure.db import get_db
from app.infrastructure.mpesa import DarajaClient
from app.core_settings import Settings
from app.application.service import OrderService
from app.application.payments import CheckoutService, PaymentInitiator
from app.application.reconciler import CallbackReconciler
from app.application.schemas import (
    OrderCreate,
    OrderRead,
    OrderUpdate,
    PaymentStatusRead,
    StkPushCreate,
    StkPushRead,
    TransactionRead,
)
from app.domain.errors import (
    CorrelationNotFound,
    CorrelationWriteError,
    GatewayAuthError,
    GatewayRejected,
    GatewayUnavailable,
    MalformedCallback,
    OrderConflict,
    OrderNotFound,
    PaymentAlreadyInFlight,
    PaymentError,
    PaymentValidationError,
    PersistenceError,
)
from shared.core import get_logger

logger = get_logger(__name__)

orders_router = APIRouter(prefix="/orders", tags=["orders"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])
transactions_router = APIRouter(prefix="/transactions", tags=["transactions"])

# Client-facing status codes; the detail is always the error's user_message
CLIENT_STATUS = (
    (PaymentValidationError, 422),
    (OrderNotFound, 404),
    (PaymentAlreadyInFlight, 409),
    (OrderConflict, 409),
    (GatewayAuthError, 502),
    (GatewayRejected, 502),
    (GatewayUnavailable, 503),
    (CorrelationWriteError, 500),
)

# Gateway-facing: any non-2xx makes Daraja redeliver. An unknown id gets 404 so a
# callback that outruns the correlation write is retried, not dropped
CALLBACK_STATUS = (
    (MalformedCallback, 400),
    (CorrelationNotFound, 404),
    (PersistenceError, 500),
)

CALLBACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}

def _status_for(error: PaymentError, table) -> int:
    for error_type, status_code in table:
        if isinstance(error, error_type):
            return status_code
    return 500

def client_error(error: PaymentError) -> HTTPException:
    return HTTPException(status_code=_status_for(error, CLIENT_STATUS), detail=error.user_message)

def get_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_gateway(request: Request) -> DarajaClient:
    return request.app.state.gateway

@orders_router.get("/", response_model=list[OrderRead])
def list_orders(db: Session = Depends(get_db)):
    return OrderService(db).list()

@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = OrderService(db).get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@orders_router.post("/", response_model=OrderRead, status_code=201)
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    return OrderService(db).create(payload)

@orders_router.put("/{order_id}", response_model=OrderRead)
def update_order(order_id: int, payload: OrderUpdate, db: Session = Depends(get_db)):
    """Fulfilment update. Payment status is only ever changed by the callback."""
    try:
        return OrderService(db).update_status(order_id, payload)
    except (OrderNotFound, OrderConflict) as e:
        raise client_error(e) from e

@orders_router.get("/{order_id}/payment-status", response_model=PaymentStatusRead)
def get_payment_status(order_id: int, db: Session = Depends(get_db)):
    """What the checkout page polls while the payer confirms on their phone."""
    try:
        return OrderService(db).payment_status(order_id)
    except OrderNotFound as e:
        raise client_error(e) from e

@payments_router.post("/mpesa/stk-push", response_model=StkPushRead)
def start_stk_push(
    payload: StkPushCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: DarajaClient = Depends(get_gateway),
):
    checkout = CheckoutService(db, PaymentInitiator(settings, gateway))
    try:
        result = checkout.start_mpesa_payment(payload.order_id, payload.phone_number)
    except PaymentError as e:
        logger.warning(
            "STK push not started",
            extra={'extra_fields': {
                'order_id': payload.order_id,
                'error_type': type(e).__name__,
                'error': str(e),
            }},
        )
        raise client_error(e) from e
    return StkPushRead(
        order_id=payload.order_id,
        checkout_request_id=result.checkout_request_id,
        merchant_request_id=result.merchant_request_id,
        customer_message=result.customer_message,
    )

@payments_router.post("/mpesa/callback")
def mpesa_callback(
    body: Any = Body(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        CallbackReconciler(db, settings).reconcile(body)
    except (MalformedCallback, CorrelationNotFound, PersistenceError) as e:
        status_code = _status_for(e, CALLBACK_STATUS)
        if status_code >= 500:
            logger.error("Callback processing failed; gateway will retry", exc_info=True)
        else:
            logger.warning(f"Callback rejected: {e}")
        return JSONResponse(
            status_code=status_code,
            content={"ResultCode": 1, "ResultDesc": type(e).__name__},
        )
    return CALLBACK_ACCEPTED

@transactions_router.get("/", response_model=list[TransactionRead])
def list_transactions(db: Session = Depends(get_db)):
    return OrderService(db).list_transactions()
