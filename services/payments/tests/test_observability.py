import json
import logging

from shared.core import clear_request_context, set_request_context
from shared.core.logging_config import SecurityFilter, StructuredFormatter

def make_record(msg, args=None, **extra):
    record = logging.LogRecord("app.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record

def test_root_and_info(client):
    assert client.get("/").json()["service"] == "payments-service"
    info = client.get("/info").json()
    assert info["mpesa_environment"] == "sandbox"
    assert info["endpoints"]["callback"] == "/payments/mpesa/callback"

def test_health_endpoints(client):
    assert client.get("/health").json()["status"] == "pass"
    assert client.get("/health/live").json() == {"status": "alive"}

    ready = client.get("/health/ready")
    assert ready.status_code in (200, 503)
    assert ready.json()["checks"]["database:connectivity"]["status"] == "pass"

def test_startup_check_reports_configuration(client):
    body = client.get("/health/startup").json()
    assert body["checks"]["config:environment"]["status"] == "pass"

def test_metrics(client):
    body = client.get("/metrics").json()
    assert body["service"] == "payments-service"
    assert "memory_rss_bytes" in body["system"]

def test_request_id_is_echoed(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]

def test_security_filter_redacts_credentials():
    record = make_record("token request with passkey=%s and Authorization: Bearer", ("hunter2",))
    SecurityFilter().filter(record)
    assert "hunter2" not in record.getMessage()
    assert "***REDACTED***" in record.getMessage()

def test_security_filter_redacts_structured_fields():
    record = make_record("STK push", extra_fields={"Password": "abc", "order_id": 7})
    SecurityFilter().filter(record)
    assert record.extra_fields == {"Password": "***REDACTED***", "order_id": 7}

def test_structured_formatter_includes_context():
    set_request_context(request_id="req-1", correlation_id="ws_CO_1")
    try:
        line = StructuredFormatter().format(make_record("Order paid", extra_fields={"order_id": 7}, duration_ms=12.5))
    finally:
        clear_request_context()

    body = json.loads(line)
    assert body["message"] == "Order paid"
    assert body["trace"] == {"request_id": "req-1", "correlation_id": "ws_CO_1"}
    assert body["custom"] == {"order_id": 7}
    assert body["performance"] == {"duration_ms": 12.5}
