import httpx

from app.application.schemas import PaymentStatusRead
from app.domain.errors import GatewayUnavailable, PaymentError

class CheckoutApiError(PaymentError):
    """The payments service answered a client call with an error."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.user_message = detail

def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    # Proxies in front of the service may answer with any JSON shape
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, str) else PaymentError.user_message

class CheckoutApiClient:
    """Talks to the payments service on behalf of a PaymentWaiter."""

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def initiate(self, order_id: int, phone_number: str) -> str:
        try:
            resp = await self.http.post(
                "/payments/mpesa/stk-push",
                json={"order_id": order_id, "phone_number": phone_number},
            )
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Payments service unreachable: {e}") from e
        if resp.status_code != 200:
            raise CheckoutApiError(resp.status_code, _detail(resp))
        return resp.json()["checkout_request_id"]

    async def payment_status(self, order_id: int) -> PaymentStatusRead:
        try:
            resp = await self.http.get(f"/orders/{order_id}/payment-status")
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Payments service unreachable: {e}") from e
        if resp.status_code != 200:
            raise CheckoutApiError(resp.status_code, _detail(resp))
        return PaymentStatusRead.model_validate(resp.json())
