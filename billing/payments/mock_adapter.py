from datetime import datetime, timezone
from urllib.parse import urlencode
import uuid

from billing.errors import GatewayError
from billing.payments.adapter import (
    AuthorizationStatus,
    BillingKey,
    GatewayAuthorization,
    PaymentGateway,
)
from config import settings


class MockPaymentGateway(PaymentGateway):
    """In-process gateway for development and tests.

    Every confirmation succeeds unless the order id was registered with
    decline(); billing key issuance can be switched off with fail_billing_key.
    """

    provider = "mock_gateway"

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url or settings.public_base_url
        self._declined_orders: set[str] = set()
        self.fail_billing_key = False
        self.confirm_calls = 0
        self.billing_key_calls = 0

    def decline(self, order_id: str) -> None:
        self._declined_orders.add(order_id)

    @staticmethod
    def new_payment_key() -> str:
        return f"mock_pk_{uuid.uuid4().hex}"

    async def create_checkout(
        self, order_id: str, amount: int, order_name: str, customer_key: str
    ) -> str:
        query = urlencode({"orderId": order_id, "amount": amount, "orderName": order_name})
        return f"{self._base_url}/checkout/mock?{query}"

    async def confirm_payment(
        self, payment_key: str, order_id: str, amount: int
    ) -> GatewayAuthorization:
        self.confirm_calls += 1
        if order_id in self._declined_orders:
            return GatewayAuthorization(
                status=AuthorizationStatus.FAILED,
                order_id=order_id,
                amount=amount,
                payment_key=payment_key,
                gateway_transaction_id=None,
                approved_at=None,
            )
        return GatewayAuthorization(
            status=AuthorizationStatus.DONE,
            order_id=order_id,
            amount=amount,
            payment_key=payment_key,
            gateway_transaction_id=payment_key,
            approved_at=datetime.now(timezone.utc),
        )

    async def issue_billing_key(self, customer_key: str, auth_key: str) -> BillingKey:
        self.billing_key_calls += 1
        if self.fail_billing_key:
            raise GatewayError("Billing key issuance failed", code="billing_key_failed")
        return BillingKey(
            billing_key=f"mock_bk_{uuid.uuid4().hex}",
            card_last_four="4242",
            card_issuer="MOCK",
            card_type="credit",
        )
