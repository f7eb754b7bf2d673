from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


PlanLiteral = Literal["monthly", "yearly"]


class CheckoutRequest(BaseModel):
    user_id: int
    plan_type: PlanLiteral
    promo_code: str | None = Field(default=None, max_length=64)


class DiscountSummaryOut(BaseModel):
    promo_code_id: int
    code: str
    discount_type: str
    discount_value: int
    discount_amount: int
    description: str | None = None
    free_trial_days: int | None = None


class CheckoutResponse(BaseModel):
    order_id: str
    checkout_url: str
    plan_type: PlanLiteral
    base_amount: int
    final_amount: int
    discount_summary: DiscountSummaryOut | None = None


class PromoValidationRequest(BaseModel):
    code: str = Field(max_length=64)
    plan_type: PlanLiteral
    user_id: int


class PromoValidationResponse(BaseModel):
    valid: bool
    promo_code_id: int | None = None
    discount_type: str | None = None
    discount_value: int | None = None
    original_price: int | None = None
    final_price: int | None = None
    free_trial_days: int | None = None
    reason: str | None = None
    message: str | None = None


class ConfirmPaymentRequest(BaseModel):
    payment_key: str = Field(min_length=1, max_length=200)
    order_id: str = Field(min_length=1, max_length=64)
    user_id: int
    plan_type: PlanLiteral
    amount: int = Field(ge=0)
    promo_code_id: int | None = None


class ActivationResponse(BaseModel):
    success: bool
    order_id: str
    subscription_id: int | None = None
    expires_at: datetime | None = None
    replayed: bool = False
    error: str | None = None
    reason: str | None = None
    message: str | None = None


class GrantPremiumRequest(BaseModel):
    target_user_id: int
    plan_type: PlanLiteral
    duration_days: int | None = Field(default=None, ge=1, le=3650)


class GrantPremiumResponse(BaseModel):
    subscription_id: int
    expires_at: datetime


class RevokePremiumRequest(BaseModel):
    target_user_id: int


class RevokePremiumResponse(BaseModel):
    ok: bool = True
    was_active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int | None = None
    user_id: int
    order_id: str | None = None
    status: str
    transaction_type: str
    payment_method: str
    gateway_provider: str
    gateway_transaction_id: str | None = None
    amount: int
    net_amount: int
    currency: str
    paid_at: datetime | None = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime


class SettlementResponse(BaseModel):
    card: list[TransactionOut]
    cash: list[TransactionOut]
    promo_code_only: list[TransactionOut]
    all: list[TransactionOut]


class StatisticsOut(BaseModel):
    total_amount: int
    total_transactions: int
    channel_amounts: dict[str, int]
    channel_transactions: dict[str, int]
    status_amounts: dict[str, int]
    status_transactions: dict[str, int]


class StatisticsResponse(BaseModel):
    daily: dict[str, StatisticsOut]
    monthly: dict[str, StatisticsOut]
    yearly: dict[str, StatisticsOut]
    overall: StatisticsOut


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    discount_type: Literal["percentage", "fixed_amount", "free_trial"]
    discount_value: int = Field(ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    valid_from: datetime
    valid_until: datetime
    applicable_plans: list[PlanLiteral] | None = None
    new_users_only: bool = False
    description: str | None = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _check_range(self) -> "PromoCodeCreateRequest":
        if self.valid_from >= self.valid_until:
            raise ValueError("valid_from must be earlier than valid_until")
        return self


class PromoCodeOut(BaseModel):
    id: int
    code: str
    discount_type: str
    discount_value: int
    max_uses: int | None = None
    current_uses: int
    valid_from: datetime
    valid_until: datetime
    applicable_plans: list[str] | None = None
    new_users_only: bool
    description: str | None = None
    status: str


class PlanPricesRequest(BaseModel):
    monthly_price: int | None = Field(default=None, ge=0)
    yearly_price: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_any(self) -> "PlanPricesRequest":
        if self.monthly_price is None and self.yearly_price is None:
            raise ValueError("at least one price is required")
        return self


class PlanPricesResponse(BaseModel):
    monthly_price: int
    yearly_price: int
