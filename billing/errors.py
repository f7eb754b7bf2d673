"""Error taxonomy shared by the billing services and the HTTP layer."""


class BillingError(Exception):
    code = "billing_error"

    def __init__(
        self, message: str, *, code: str | None = None, details: dict | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(BillingError):
    """Bad input the caller can correct: plan type, promo code, amounts."""

    code = "validation_error"


class GatewayError(BillingError):
    """The payment gateway declined or could not complete a request."""

    code = "gateway_error"


class PersistenceError(BillingError):
    code = "persistence_error"


class ConsistencyViolation(BillingError):
    """Two requests disagree about the same idempotency key."""

    code = "consistency_violation"
