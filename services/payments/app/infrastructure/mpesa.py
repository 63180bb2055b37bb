"""Daraja (Safaricom M-Pesa) HTTP client.

Only the calls the checkout needs: OAuth client-credential exchange,
STK push (Lipa na M-Pesa Online) and the STK push status query.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from cachetools import TTLCache

from app.core_settings import Settings
from app.domain.errors import GatewayAuthError, GatewayRejected, GatewayUnavailable
from shared.core import get_logger

logger = get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja timestamps are in East Africa Time (no DST)
EAT = timezone(timedelta(hours=3), "EAT")

# Refresh tokens this many seconds before the gateway says they expire
TOKEN_EXPIRY_MARGIN = 60

def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Return the gateway timestamp, ``YYYYMMDDHHmmss`` in EAT."""
    now = now or datetime.now(EAT)
    if now.tzinfo is not None:
        now = now.astimezone(EAT)
    return now.strftime("%Y%m%d%H%M%S")

def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("utf-8")

def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("errorMessage") or data.get("ResponseDescription") or data)[:200]
    return str(data)[:200]

class DarajaClient:
    """Thin wrapper over an injected ``httpx.Client``.

    The client owns no global state: tokens are cached per instance, keyed by
    consumer key, and every request uses the timeout from settings.
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.Client] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.timeout = httpx.Timeout(settings.MPESA_TIMEOUT_SECONDS)
        self.http = http or httpx.Client(timeout=self.timeout)
        self.clock = clock or (lambda: datetime.now(EAT))
        self._tokens: TTLCache = TTLCache(maxsize=4, ttl=3600)

    def close(self):
        self.http.close()

    def _url(self, path: str) -> str:
        return f"{self.settings.mpesa_base_url}{path}"

    def access_token(self) -> str:
        key = self.settings.MPESA_CONSUMER_KEY
        cached = self._tokens.get(key)
        if cached is not None:
            return cached

        try:
            resp = self.http.get(
                self._url(TOKEN_PATH),
                auth=(self.settings.MPESA_CONSUMER_KEY, self.settings.MPESA_CONSUMER_SECRET),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise GatewayAuthError(f"Token request failed: {e}") from e

        if resp.status_code != 200:
            raise GatewayAuthError(f"Token request returned HTTP {resp.status_code}: {_error_text(resp)}")
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayAuthError("Token response is not JSON") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise GatewayAuthError("Token response carried no access_token")

        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        ttl = expires_in - TOKEN_EXPIRY_MARGIN
        if ttl > 0:
            # TTLCache has one ttl per cache; rebuild when the gateway's differs
            if self._tokens.ttl != ttl:
                self._tokens = TTLCache(maxsize=4, ttl=ttl)
            self._tokens[key] = token
        return token

    def _bearer_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
        }

    def build_stk_push_payload(self, amount: int, phone: str, account_reference: str) -> Dict[str, Any]:
        shortcode = self.settings.MPESA_SHORTCODE
        timestamp = generate_timestamp(self.clock())
        return {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.MPESA_PASSKEY, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.MPESA_TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.MPESA_CALLBACK_URL,
            "AccountReference": account_reference,
            "TransactionDesc": self.settings.MPESA_TRANSACTION_DESC,
        }

    def stk_push(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit an STK push. Never retried here: a retry could prompt the payer twice."""
        headers = self._bearer_headers()
        try:
            resp = self.http.post(self._url(STK_PUSH_PATH), json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"STK push request failed: {e}") from e

        if resp.status_code in (502, 503, 504):
            raise GatewayUnavailable(f"STK push returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            if resp.status_code >= 500:
                raise GatewayUnavailable(f"STK push returned HTTP {resp.status_code}") from e
            raise GatewayRejected(f"STK push returned non-JSON HTTP {resp.status_code}") from e

        if resp.status_code != 200:
            raise GatewayRejected(
                f"STK push rejected (HTTP {resp.status_code}): {_error_text(resp)}",
                error_code=data.get("errorCode") if isinstance(data, dict) else None,
            )
        if not isinstance(data, dict):
            raise GatewayRejected(f"STK push returned unexpected body: {data!r}"[:200])
        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            raise GatewayRejected(
                f"STK push not accepted: {data.get('ResponseDescription') or data}",
                error_code=str(data.get("ResponseCode")),
            )

        logger.info(
            "STK push accepted",
            extra={'extra_fields': {
                'checkout_request_id': data["CheckoutRequestID"],
                'merchant_request_id': data.get("MerchantRequestID"),
                'account_reference': payload.get("AccountReference"),
            }},
        )
        return data

    def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        """Ask the gateway for the outcome of an earlier push.

        Returns the decoded body for both answers and "still processing"
        errors; the caller decides what a given ``ResultCode``/``errorCode`` means.
        """
        shortcode = self.settings.MPESA_SHORTCODE
        timestamp = generate_timestamp(self.clock())
        payload = {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.MPESA_PASSKEY, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        headers = self._bearer_headers()
        try:
            resp = self.http.post(self._url(STK_QUERY_PATH), json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"STK query failed: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayUnavailable(f"STK query returned non-JSON HTTP {resp.status_code}") from e
        if not isinstance(data, dict):
            raise GatewayUnavailable(f"STK query returned unexpected body: {data!r}"[:200])
        return data
