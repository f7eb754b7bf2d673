from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


class AuthorizationStatus(str):
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class GatewayAuthorization:
    status: str
    order_id: str
    amount: int
    payment_key: str
    gateway_transaction_id: str | None
    approved_at: datetime | None

    @property
    def is_done(self) -> bool:
        return self.status == AuthorizationStatus.DONE


@dataclass(frozen=True)
class BillingKey:
    billing_key: str
    card_last_four: str | None = None
    card_issuer: str | None = None
    card_type: str | None = None

    def card_info(self) -> dict:
        return {
            "issuer": self.card_issuer,
            "last_four": self.card_last_four,
            "type": self.card_type,
        }


class PaymentGateway(ABC):
    provider: str = "unknown"

    @abstractmethod
    async def create_checkout(
        self, order_id: str, amount: int, order_name: str, customer_key: str
    ) -> str:
        """
        Returns the URL the customer is redirected to for this order.
        """
        raise NotImplementedError

    @abstractmethod
    async def confirm_payment(
        self, payment_key: str, order_id: str, amount: int
    ) -> GatewayAuthorization:
        raise NotImplementedError

    @abstractmethod
    async def issue_billing_key(self, customer_key: str, auth_key: str) -> BillingKey:
        raise NotImplementedError
