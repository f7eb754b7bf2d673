import base64
from datetime import datetime
import logging

import httpx

from billing.errors import GatewayError
from billing.payments.adapter import (
    AuthorizationStatus,
    BillingKey,
    GatewayAuthorization,
    PaymentGateway,
)
from config import settings


logger = logging.getLogger(__name__)


class TossPaymentsAdapter(PaymentGateway):
    provider = "toss_payments"

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key if secret_key is not None else settings.toss_secret_key
        self._base_url = (base_url or settings.toss_base_url).rstrip("/")
        self._transport = transport

    def _auth_header(self) -> str:
        raw = f"{self._secret_key}:"
        token = base64.b64encode(raw.encode("utf-8")).decode("utf-8")
        return f"Basic {token}"

    async def _post(self, path: str, payload: dict, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": self._auth_header()}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=30, transport=self._transport
            ) as client:
                response = await client.post(path, headers=headers, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            body = _safe_json(exc.response)
            logger.warning(
                "Gateway rejected request",
                extra={
                    "path": path,
                    "status_code": exc.response.status_code,
                    "gateway_code": body.get("code"),
                },
            )
            raise GatewayError(
                body.get("message") or "Payment gateway rejected the request",
                code=body.get("code") or "gateway_rejected",
                details={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.exception("Gateway request failed", extra={"path": path})
            raise GatewayError("Payment gateway unavailable", code="gateway_unavailable") from exc

    async def create_checkout(
        self, order_id: str, amount: int, order_name: str, customer_key: str
    ) -> str:
        data = await self._post(
            "/v1/payments",
            {
                "method": "CARD",
                "amount": amount,
                "orderId": order_id,
                "orderName": order_name,
                "customerKey": customer_key,
                "successUrl": f"{settings.public_base_url}/checkout/success",
                "failUrl": f"{settings.public_base_url}/checkout/fail",
            },
            idempotency_key=f"checkout:{order_id}",
        )
        return data["checkout"]["url"]

    async def confirm_payment(
        self, payment_key: str, order_id: str, amount: int
    ) -> GatewayAuthorization:
        data = await self._post(
            "/v1/payments/confirm",
            {"paymentKey": payment_key, "orderId": order_id, "amount": amount},
            idempotency_key=f"confirm:{order_id}",
        )
        approved_at = data.get("approvedAt")
        status = data.get("status")
        return GatewayAuthorization(
            status=AuthorizationStatus.DONE if status == "DONE" else AuthorizationStatus.FAILED,
            order_id=data.get("orderId", order_id),
            amount=int(data.get("totalAmount", amount)),
            payment_key=data.get("paymentKey", payment_key),
            gateway_transaction_id=data.get("paymentKey", payment_key),
            approved_at=datetime.fromisoformat(approved_at) if approved_at else None,
        )

    async def issue_billing_key(self, customer_key: str, auth_key: str) -> BillingKey:
        data = await self._post(
            "/v1/billing/authorizations/issue",
            {"authKey": auth_key, "customerKey": customer_key},
        )
        card = data.get("card") or {}
        number = card.get("number") or ""
        return BillingKey(
            billing_key=data["billingKey"],
            card_last_four=number[-4:] if number else None,
            card_issuer=data.get("cardCompany") or card.get("issuerCode"),
            card_type=card.get("cardType"),
        )


def _safe_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
