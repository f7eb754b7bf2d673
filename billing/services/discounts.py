from dataclasses import dataclass

from billing.db.models import DiscountType


@dataclass(frozen=True)
class DiscountResult:
    base_price: int
    final_price: int
    free_trial_days: int | None = None

    @property
    def discount_amount(self) -> int:
        return self.base_price - self.final_price


def calculate_discount(
    base_price: int, discount_type: str, discount_value: int
) -> DiscountResult:
    if base_price < 0:
        raise ValueError(f"base_price must be non-negative, got {base_price}")

    if discount_type == DiscountType.PERCENTAGE:
        return DiscountResult(
            base_price=base_price,
            final_price=base_price - base_price * discount_value // 100,
        )
    if discount_type == DiscountType.FIXED_AMOUNT:
        return DiscountResult(
            base_price=base_price,
            final_price=max(0, base_price - discount_value),
        )
    if discount_type == DiscountType.FREE_TRIAL:
        return DiscountResult(
            base_price=base_price, final_price=0, free_trial_days=discount_value
        )
    raise ValueError(f"Unknown discount type: {discount_type!r}")
