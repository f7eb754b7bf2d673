from billing.payments.adapter import PaymentGateway
from billing.payments.mock_adapter import MockPaymentGateway
from billing.payments.toss_adapter import TossPaymentsAdapter
from config import settings


def build_gateway() -> PaymentGateway:
    if settings.gateway_mode == "toss":
        return TossPaymentsAdapter()
    return MockPaymentGateway()
