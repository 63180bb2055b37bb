import os

# app.main builds a module-level app on import; it needs a complete environment
os.environ.update({
    "DATABASE_URL": "sqlite://",
    "MPESA_CONSUMER_KEY": "test-consumer-key",
    "MPESA_CONSUMER_SECRET": "test-consumer-secret",
    "MPESA_PASSKEY": "test-passkey",
    "MPESA_SHORTCODE": "174379",
    "MPESA_CALLBACK_URL": "https://shop.example.com/payments/mpesa/callback",
    "ADMIN_NOTIFICATION_EMAIL": "admin@example.com",
})

import httpx
import pytest
from fastapi.testclient import TestClient

from app.core_settings import load_settings
from app.infrastructure.db import init_models
from app.infrastructure.mpesa import STK_PUSH_PATH, STK_QUERY_PATH, DarajaClient
from app.main import create_app

TOKEN_URL_PATH = "/oauth/v1/generate"

class GatewayStub:
    """httpx.MockTransport handler that plays the Daraja sandbox."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.push_response = None
        self.push_error = None
        self.query_response = (200, {
            "ResponseCode": "0",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        })
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == TOKEN_URL_PATH:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": "sandbox-token", "expires_in": "3599"})
        if path == STK_PUSH_PATH:
            if self.push_error is not None:
                raise self.push_error
            if self.push_response is not None:
                status, body = self.push_response
                return httpx.Response(status, json=body)
            self._counter += 1
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-{self._counter}",
                "CheckoutRequestID": f"ws_CO_{self._counter:04d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })
        if path == STK_QUERY_PATH:
            status, body = self.query_response
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errorMessage": "not found"})

    @property
    def pushes(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == STK_PUSH_PATH]

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == TOKEN_URL_PATH]

def callback_body(checkout_request_id, result_code=0, result_desc="The service request is processed successfully.",
                  amount=1500, receipt="ABC123", phone=254712345678, items=None):
    stk = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {"Item": items if items is not None else [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20240101120000},
            {"Name": "PhoneNumber", "Value": phone},
        ]}
    return {"Body": {"stkCallback": stk}}

def order_payload(unit_price="1500.00", quantity=1, payment_method="mpesa", **extra):
    payload = {
        "user_id": "user-1",
        "payment_method": payment_method,
        "items": [{"book_id": 1, "title": "Things Fall Apart", "quantity": quantity, "unit_price": unit_price}],
    }
    payload.update(extra)
    return payload

@pytest.fixture
def settings():
    return load_settings(DATABASE_URL="sqlite://")

@pytest.fixture
def gateway_stub():
    return GatewayStub()

@pytest.fixture
def daraja(settings, gateway_stub):
    client = DarajaClient(settings, http=httpx.Client(transport=httpx.MockTransport(gateway_stub)))
    yield client
    client.close()

@pytest.fixture
def app(settings, daraja):
    application = create_app(settings, gateway=daraja)
    init_models(application.state.engine)
    return application

@pytest.fixture
def client(app):
    return TestClient(app)

@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()

@pytest.fixture
def create_order(client):
    def _create(**kwargs):
        resp = client.post("/orders/", json=order_payload(**kwargs))
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _create

@pytest.fixture
def pending_payment(client, create_order):
    """An M-Pesa order with an STK push in flight."""
    order = create_order()
    resp = client.post("/payments/mpesa/stk-push", json={"order_id": order["id"], "phone_number": "0712345678"})
    assert resp.status_code == 200, resp.text
    return order["id"], resp.json()["checkout_request_id"]
