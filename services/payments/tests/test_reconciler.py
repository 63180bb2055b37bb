from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.application.reconciler import CallbackReconciler, Outcome, metadata_map, parse_callback
from app.domain.errors import CorrelationNotFound, MalformedCallback, PersistenceError
from app.domain.models import MpesaOrder, Transaction
from conftest import callback_body

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}

def ledger_count(db):
    return db.scalar(select(func.count()).select_from(Transaction))

def fresh_order(db, order_id):
    db.expire_all()
    return db.get(MpesaOrder, order_id)

def test_success_round_trip(client, pending_payment, db):
    order_id, checkout_id = pending_payment

    resp = client.post("/payments/mpesa/callback", json=callback_body(checkout_id))
    assert resp.status_code == 200
    assert resp.json() == ACCEPTED

    order = fresh_order(db, order_id)
    assert order.payment_status == "paid"
    assert order.status == "processing"
    assert order.mpesa_receipt_number == "ABC123"
    assert order.mpesa_phone_number == "254712345678"

    entries = db.scalars(select(Transaction)).all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.transaction_id == "ABC123"
    assert entry.amount == Decimal("1500.00")
    assert entry.currency == "KES"
    assert entry.status == "completed"
    assert entry.payment_method == "mpesa"
    assert entry.gateway == "mpesa"
    assert entry.user_id == "user-1"
    assert entry.order_id == order_id

def test_duplicate_success_callback_is_idempotent(client, pending_payment, db):
    order_id, checkout_id = pending_payment
    body = callback_body(checkout_id)

    first = client.post("/payments/mpesa/callback", json=body)
    second = client.post("/payments/mpesa/callback", json=body)

    assert first.status_code == second.status_code == 200
    assert ledger_count(db) == 1
    assert fresh_order(db, order_id).payment_status == "paid"

def test_failure_round_trip(client, pending_payment, db):
    order_id, checkout_id = pending_payment

    resp = client.post(
        "/payments/mpesa/callback",
        json=callback_body(checkout_id, result_code=1032, result_desc="Request cancelled by user"),
    )
    assert resp.status_code == 200

    order = fresh_order(db, order_id)
    assert order.payment_status == "failed"
    assert order.status == "failed"
    assert order.mpesa_receipt_number is None
    assert ledger_count(db) == 0

def test_failure_after_success_does_not_regress(client, pending_payment, db):
    order_id, checkout_id = pending_payment
    client.post("/payments/mpesa/callback", json=callback_body(checkout_id))

    resp = client.post("/payments/mpesa/callback", json=callback_body(checkout_id, result_code=1032))
    assert resp.status_code == 200

    order = fresh_order(db, order_id)
    assert order.payment_status == "paid"
    assert order.status == "processing"
    assert ledger_count(db) == 1

def test_success_after_failure_is_ignored_and_flagged(client, pending_payment, db, caplog):
    order_id, checkout_id = pending_payment
    client.post("/payments/mpesa/callback", json=callback_body(checkout_id, result_code=1032))

    resp = client.post("/payments/mpesa/callback", json=callback_body(checkout_id, receipt="LATE999"))
    assert resp.status_code == 200

    assert fresh_order(db, order_id).payment_status == "failed"
    assert ledger_count(db) == 0
    flagged = [r for r in caplog.records if r.levelname == "ERROR" and "already marked failed" in r.getMessage()]
    assert flagged
    assert flagged[0].extra_fields["receipt_number"] == "LATE999"

def test_unknown_correlation_id_mutates_nothing(client, pending_payment, db):
    order_id, _ = pending_payment

    resp = client.post("/payments/mpesa/callback", json=callback_body("ws_CO_UNKNOWN"))
    assert resp.status_code == 404
    assert resp.json()["ResultCode"] != 0

    assert fresh_order(db, order_id).payment_status == "pending"
    assert ledger_count(db) == 0

@pytest.mark.parametrize("body", [
    {},
    {"Body": {}},
    {"Body": {"stkCallback": {"ResultCode": 0}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 0}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_0001", "ResultCode": "zero"}}},
    [1, 2, 3],
])
def test_malformed_callback_is_bad_request(client, pending_payment, db, body):
    order_id, _ = pending_payment
    resp = client.post("/payments/mpesa/callback", json=body)
    assert resp.status_code == 400
    assert fresh_order(db, order_id).payment_status == "pending"

def test_success_without_receipt_is_malformed(client, pending_payment, db):
    order_id, checkout_id = pending_payment
    body = callback_body(checkout_id, items=[
        {"Name": "Amount", "Value": 1500},
        {"Name": "PhoneNumber", "Value": 254712345678},
    ])
    resp = client.post("/payments/mpesa/callback", json=body)
    assert resp.status_code == 400
    assert fresh_order(db, order_id).payment_status == "pending"
    assert ledger_count(db) == 0

def test_metadata_item_order_does_not_matter(client, pending_payment, db):
    order_id, checkout_id = pending_payment
    body = callback_body(checkout_id, items=[
        {"Name": "PhoneNumber", "Value": 254700000001},
        {"Name": "TransactionDate", "Value": 20240101120000},
        {"Name": "MpesaReceiptNumber", "Value": "XYZ789"},
        {"Name": "Amount", "Value": 1500},
    ])
    assert client.post("/payments/mpesa/callback", json=body).status_code == 200

    order = fresh_order(db, order_id)
    assert order.mpesa_receipt_number == "XYZ789"
    assert order.mpesa_phone_number == "254700000001"

def test_metadata_map_indexes_by_name():
    callback = parse_callback(callback_body("ws_CO_1"))
    values = metadata_map(callback)
    assert values["MpesaReceiptNumber"] == "ABC123"
    assert values["Balance"] is None

def test_ledger_failure_keeps_order_paid_and_retry_recovers(client, pending_payment, db, monkeypatch):
    order_id, checkout_id = pending_payment
    body = callback_body(checkout_id)

    def broken_ledger(self, order, receipt):
        raise PersistenceError("ledger table locked")

    with monkeypatch.context() as patch:
        patch.setattr(CallbackReconciler, "_record_ledger_entry", broken_ledger)
        resp = client.post("/payments/mpesa/callback", json=body)
    assert resp.status_code == 500
    assert fresh_order(db, order_id).payment_status == "paid"
    assert ledger_count(db) == 0

    # Gateway redelivery completes the ledger
    assert client.post("/payments/mpesa/callback", json=body).status_code == 200
    assert ledger_count(db) == 1

def test_reconciler_reports_outcomes(app, pending_payment, settings):
    _, checkout_id = pending_payment
    with app.state.session_factory() as session:
        reconciler = CallbackReconciler(session, settings)

        first = reconciler.reconcile(callback_body(checkout_id))
        again = reconciler.reconcile(callback_body(checkout_id))
        late_failure = reconciler.reconcile(callback_body(checkout_id, result_code=1))

    assert first.outcome == Outcome.PAID and first.ledger_created
    assert again.outcome == Outcome.PAID and not again.ledger_created
    assert late_failure.outcome == Outcome.IGNORED

def test_reconciler_raises_domain_errors(app, settings):
    with app.state.session_factory() as session:
        reconciler = CallbackReconciler(session, settings)
        with pytest.raises(CorrelationNotFound):
            reconciler.reconcile(callback_body("ws_CO_NONE"))
        with pytest.raises(MalformedCallback):
            reconciler.reconcile({"Body": None})

def test_callback_logs_carry_checkout_request_id(client, pending_payment, caplog):
    _, checkout_id = pending_payment
    client.post("/payments/mpesa/callback", json=callback_body(checkout_id))
    received = [r for r in caplog.records if r.getMessage() == "STK callback received"]
    assert received
    assert received[0].correlation_id == checkout_id

def test_order_update_failure_is_reported_to_gateway(client, pending_payment, db, monkeypatch):
    order_id, checkout_id = pending_payment

    def broken_update(self, checkout_request_id, target, values):
        raise PersistenceError("orders table locked")

    monkeypatch.setattr(CallbackReconciler, "_transition", broken_update)
    resp = client.post("/payments/mpesa/callback", json=callback_body(checkout_id))

    assert resp.status_code == 500
    assert resp.json()["ResultCode"] != 0
    assert fresh_order(db, order_id).payment_status == "pending"
    assert ledger_count(db) == 0
