import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from app.application.payments import PaymentInitiator, normalize_phone, payable_amount, validate_phone
from app.domain.errors import GatewayAuthError, GatewayRejected, GatewayUnavailable, PaymentValidationError
from app.infrastructure.mpesa import generate_password, generate_timestamp

FIXED_NOW = datetime(2024, 1, 1, 21, 30, 5, tzinfo=timezone.utc)

@pytest.fixture
def initiator(settings, daraja):
    daraja.clock = lambda: FIXED_NOW
    return PaymentInitiator(settings, daraja)

def test_timestamp_is_east_africa_time():
    # 21:30 UTC is 00:30 the next day in Nairobi
    assert generate_timestamp(FIXED_NOW) == "20240102003005"

def test_password_is_base64_of_shortcode_passkey_timestamp():
    password = generate_password("174379", "passkey", "20240102003005")
    assert base64.b64decode(password).decode() == "174379passkey20240102003005"

@pytest.mark.parametrize("raw,expected", [
    ("0712345678", "254712345678"),
    ("+254712345678", "254712345678"),
    ("254712345678", "254712345678"),
    ("712345678", "254712345678"),
    ("0712 345 678", "254712345678"),
    ("(0110) 345-678", "254110345678"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected
    assert validate_phone(raw) == expected

@pytest.mark.parametrize("raw", ["12345", "0812345678", "25471234567", "", "phone"])
def test_validate_phone_rejects_non_safaricom_numbers(raw):
    with pytest.raises(PaymentValidationError):
        validate_phone(raw)

def test_payable_amount_rounds_up():
    from decimal import Decimal
    assert payable_amount(Decimal("1499.01")) == 1500
    assert payable_amount(Decimal("1500.00")) == 1500

def test_initiate_sends_exactly_one_push(initiator, gateway_stub, settings):
    result = initiator.initiate(1500, "0712345678", "ORD-20240101-ABC123")

    assert result.checkout_request_id == "ws_CO_0001"
    assert len(gateway_stub.pushes) == 1
    push = gateway_stub.pushes[0]
    assert push.headers["Authorization"] == "Bearer sandbox-token"

    payload = json.loads(push.content)
    assert payload["BusinessShortCode"] == settings.MPESA_SHORTCODE
    assert payload["Timestamp"] == "20240102003005"
    assert base64.b64decode(payload["Password"]).decode() == (
        f"{settings.MPESA_SHORTCODE}{settings.MPESA_PASSKEY}20240102003005"
    )
    assert payload["TransactionType"] == "CustomerPayBillOnline"
    assert payload["Amount"] == 1500
    assert payload["PartyA"] == "254712345678"
    assert payload["PartyB"] == settings.MPESA_SHORTCODE
    assert payload["PhoneNumber"] == "254712345678"
    assert payload["CallBackURL"] == settings.MPESA_CALLBACK_URL
    assert payload["AccountReference"] == "ORD-20240101-ABC123"
    assert payload["TransactionDesc"] == "Order Payment"

@pytest.mark.parametrize("amount", [0, -5, 150001, 10.5, "100", True])
def test_invalid_amount_makes_no_network_call(initiator, gateway_stub, amount):
    with pytest.raises(PaymentValidationError):
        initiator.initiate(amount, "0712345678", "ORD-1")
    assert gateway_stub.requests == []

def test_invalid_phone_makes_no_network_call(initiator, gateway_stub):
    with pytest.raises(PaymentValidationError):
        initiator.initiate(100, "12345", "ORD-1")
    assert gateway_stub.requests == []

def test_amount_bounds_are_inclusive(initiator):
    assert initiator.validate_amount(1) == 1
    assert initiator.validate_amount(150000) == 150000

def test_token_is_cached_between_pushes(initiator, gateway_stub):
    initiator.initiate(100, "0712345678", "ORD-1")
    initiator.initiate(100, "0712345678", "ORD-2")
    assert len(gateway_stub.token_requests) == 1
    assert len(gateway_stub.pushes) == 2

def test_token_failure_is_auth_error(initiator, gateway_stub):
    gateway_stub.token_status = 401
    with pytest.raises(GatewayAuthError):
        initiator.initiate(100, "0712345678", "ORD-1")
    assert gateway_stub.pushes == []

def test_non_zero_response_code_is_rejected_without_an_id(initiator, gateway_stub):
    gateway_stub.push_response = (200, {
        "MerchantRequestID": "29115-1",
        "ResponseCode": "1",
        "ResponseDescription": "Rejected",
    })
    with pytest.raises(GatewayRejected):
        initiator.initiate(100, "0712345678", "ORD-1")

def test_http_error_is_rejected_with_code(initiator, gateway_stub):
    gateway_stub.push_response = (400, {
        "requestId": "1",
        "errorCode": "400.002.02",
        "errorMessage": "Bad Request - Invalid PhoneNumber",
    })
    with pytest.raises(GatewayRejected) as excinfo:
        initiator.initiate(100, "0712345678", "ORD-1")
    assert excinfo.value.error_code == "400.002.02"

def test_transport_failure_is_unavailable(initiator, gateway_stub):
    gateway_stub.push_error = httpx.ConnectTimeout("timed out")
    with pytest.raises(GatewayUnavailable):
        initiator.initiate(100, "0712345678", "ORD-1")

def test_gateway_outage_status_is_unavailable(initiator, gateway_stub):
    gateway_stub.push_response = (503, {"errorMessage": "Service Unavailable"})
    with pytest.raises(GatewayUnavailable):
        initiator.initiate(100, "0712345678", "ORD-1")
