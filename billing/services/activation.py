"""Turn a gateway-confirmed payment into an active subscription.

The writes below are separate storage transactions, so activation is a
forward-only saga. Steps up to and including subscription creation abort the
activation when they fail; later steps only degrade it:

1. gateway confirmation (supplied by the caller)
2. billing key issuance (after the order id is claimed and any promo code is
   re-checked against its validity window, plan and per-user rules)
3. subscription creation
4. transaction ledger entry
5. premium flag on the user (re-converged by the reconciliation job)
6. promo code redemption

There is no automatic rollback of step 3; anything left over after a failure is
written to the audit log for manual follow-up.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.db.models import (
    ActivationClaim,
    ClaimStatus,
    DiscountType,
    PaymentMethod,
    as_utc,
)
from billing.errors import GatewayError
from billing.payments.adapter import GatewayAuthorization, PaymentGateway
from billing.repositories import activation_claims as claim_repo
from billing.repositories import payments as payment_repo
from billing.repositories import subscriptions as subscription_repo
from billing.repositories import users as user_repo
from billing.repositories.audit_log import add_audit_log
from billing.services import promos as promo_service
from billing.services.settings import (
    ensure_plan_type,
    get_effective_settings,
    price_per_month,
)
from config import settings


logger = logging.getLogger(__name__)


class ActivationOutcome(str):
    COMPLETED = "completed"
    ABORTED = "aborted"


class ActivationError(str):
    PAYMENT_DECLINED = "payment_declined"
    GATEWAY_SETUP_FAILED = "gateway_setup_failed"
    SUBSCRIPTION_CREATION_FAILED = "subscription_creation_failed"
    CONSISTENCY_VIOLATION = "consistency_violation"
    ACTIVATION_IN_PROGRESS = "activation_in_progress"
    PROMO_INELIGIBLE = "promo_ineligible"


class SagaStep(str):
    GATEWAY_CONFIRMED = "gateway_confirmed"
    ISSUE_BILLING_KEY = "issue_billing_key"
    CREATE_SUBSCRIPTION = "create_subscription"
    LOG_TRANSACTION = "log_transaction"
    UPDATE_PREMIUM_FLAG = "update_premium_flag"
    RECORD_PROMO_USE = "record_promo_use"


ERROR_MESSAGES = {
    ActivationError.PAYMENT_DECLINED: "Payment failed. Please try again.",
    ActivationError.GATEWAY_SETUP_FAILED: (
        "Payment could not be set up for recurring billing; no plan was activated."
    ),
    ActivationError.SUBSCRIPTION_CREATION_FAILED: (
        "Payment was received but the plan could not be activated. Support has been notified."
    ),
    ActivationError.CONSISTENCY_VIOLATION: "This order conflicts with an earlier request.",
    ActivationError.ACTIVATION_IN_PROGRESS: "This order is already being activated.",
    ActivationError.PROMO_INELIGIBLE: (
        "The promo code can no longer be applied; no plan was activated. Support has been notified."
    ),
}


@dataclass(frozen=True)
class ActivationResult:
    order_id: str
    outcome: str
    subscription_id: int | None = None
    expires_at: datetime | None = None
    error: str | None = None
    reason: str | None = None
    replayed: bool = False
    degraded_steps: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.outcome == ActivationOutcome.COMPLETED

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES.get(self.error) if self.error else None

    @classmethod
    def aborted(
        cls, order_id: str, error: str, reason: str | None = None
    ) -> "ActivationResult":
        return cls(
            order_id=order_id, outcome=ActivationOutcome.ABORTED, error=error, reason=reason
        )


@dataclass(frozen=True)
class _Request:
    order_id: str
    user_id: int
    plan_type: str
    amount: int
    promo_code_id: int | None

    def matches(self, claim: ActivationClaim) -> bool:
        return (
            claim.user_id == self.user_id
            and claim.plan_type == self.plan_type
            and claim.amount == self.amount
            and claim.promo_code_id == self.promo_code_id
        )


async def _flag_for_review(
    session_factory: async_sessionmaker[AsyncSession], action: str, payload: dict
) -> None:
    try:
        async with session_factory() as session:
            await add_audit_log(session, action=action, payload=payload)
            await session.commit()
    except Exception:
        logger.exception("Failed to write audit entry", extra={"action": action, **payload})


async def _replay(
    session_factory: async_sessionmaker[AsyncSession],
    request: _Request,
    claim: ActivationClaim,
) -> ActivationResult:
    if not request.matches(claim):
        logger.error(
            "Order id reused with different parameters",
            extra={
                "order_id": request.order_id,
                "claimed_user_id": claim.user_id,
                "claimed_plan_type": claim.plan_type,
                "claimed_amount": claim.amount,
                "user_id": request.user_id,
                "plan_type": request.plan_type,
                "amount": request.amount,
            },
        )
        await _flag_for_review(
            session_factory,
            "activation_consistency_violation",
            {"order_id": request.order_id, "user_id": request.user_id},
        )
        return ActivationResult.aborted(
            request.order_id, ActivationError.CONSISTENCY_VIOLATION
        )

    if claim.status == ClaimStatus.PENDING:
        return ActivationResult.aborted(
            request.order_id, ActivationError.ACTIVATION_IN_PROGRESS
        )
    if claim.status == ClaimStatus.FAILED:
        return ActivationResult.aborted(
            request.order_id, claim.error_code or ActivationError.SUBSCRIPTION_CREATION_FAILED
        )

    async with session_factory() as session:
        subscription = await subscription_repo.get_subscription_by_id(
            session, claim.subscription_id
        )
    return ActivationResult(
        order_id=request.order_id,
        outcome=ActivationOutcome.COMPLETED,
        subscription_id=claim.subscription_id,
        expires_at=as_utc(subscription.current_period_end) if subscription else None,
        replayed=True,
    )


async def find_existing_activation(
    session_factory: async_sessionmaker[AsyncSession],
    order_id: str,
    user_id: int,
    plan_type: str,
    amount: int,
    promo_code_id: int | None = None,
) -> ActivationResult | None:
    async with session_factory() as session:
        claim = await claim_repo.get_claim(session, order_id)
    if claim is None:
        return None
    request = _Request(order_id, user_id, plan_type, amount, promo_code_id)
    return await _replay(session_factory, request, claim)


async def _ensure_user(
    session_factory: async_sessionmaker[AsyncSession], user_id: int
) -> None:
    async with session_factory() as session:
        try:
            await user_repo.get_or_create_user(session, user_id)
            await session.commit()
        except IntegrityError:
            # Created concurrently by another request.
            await session.rollback()


async def _claim_order(
    session_factory: async_sessionmaker[AsyncSession], request: _Request
) -> ActivationClaim | None:
    """Insert the idempotency claim. Returns the existing claim on conflict."""
    async with session_factory() as session:
        try:
            await claim_repo.create_claim(
                session,
                order_id=request.order_id,
                user_id=request.user_id,
                plan_type=request.plan_type,
                amount=request.amount,
                promo_code_id=request.promo_code_id,
            )
            await session.commit()
            return None
        except IntegrityError:
            await session.rollback()
            return await claim_repo.get_claim(session, request.order_id)


async def _recheck_promo(
    session_factory: async_sessionmaker[AsyncSession],
    promo_code_id: int,
    plan_type: str,
    user_id: int,
    now: datetime,
) -> promo_service.EligibilityResult:
    async with session_factory() as session:
        return await promo_service.check_redeemable(
            session, promo_code_id, plan_type, user_id, now=now
        )


async def activate(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    order_id: str,
    user_id: int,
    plan_type: str,
    amount: int,
    authorization: GatewayAuthorization,
    promo_code_id: int | None = None,
    now: datetime | None = None,
) -> ActivationResult:
    now = now or datetime.now(timezone.utc)
    ensure_plan_type(plan_type)
    request = _Request(order_id, user_id, plan_type, amount, promo_code_id)
    log_extra = {"order_id": order_id, "user_id": user_id}

    existing = await find_existing_activation(
        session_factory, order_id, user_id, plan_type, amount, promo_code_id
    )
    if existing is not None:
        logger.info("Activation replayed", extra=log_extra)
        return existing

    # Step 1: nothing has been written yet, a decline simply aborts.
    if not authorization.is_done:
        logger.warning(
            "Payment declined", extra={**log_extra, "step": SagaStep.GATEWAY_CONFIRMED}
        )
        return ActivationResult.aborted(order_id, ActivationError.PAYMENT_DECLINED)
    if authorization.order_id != order_id or authorization.amount != amount:
        logger.error(
            "Gateway authorization does not match the activation request",
            extra={
                **log_extra,
                "step": SagaStep.GATEWAY_CONFIRMED,
                "authorized_order_id": authorization.order_id,
                "authorized_amount": authorization.amount,
                "amount": amount,
            },
        )
        await _flag_for_review(
            session_factory,
            "activation_consistency_violation",
            {**log_extra, "authorized_amount": authorization.amount, "amount": amount},
        )
        return ActivationResult.aborted(order_id, ActivationError.CONSISTENCY_VIOLATION)

    # The claim is taken before any gateway side effect so that a concurrent
    # duplicate stops here.
    await _ensure_user(session_factory, user_id)
    conflicting = await _claim_order(session_factory, request)
    if conflicting is not None:
        return await _replay(session_factory, request, conflicting)

    trial_days = None
    if promo_code_id is not None:
        try:
            eligibility = await _recheck_promo(
                session_factory, promo_code_id, plan_type, user_id, now
            )
        except Exception:
            logger.exception(
                "Promo code re-check failed after a confirmed charge",
                extra={**log_extra, "promo_code_id": promo_code_id},
            )
            return await _abort_claimed(
                session_factory,
                request,
                authorization,
                ActivationError.SUBSCRIPTION_CREATION_FAILED,
                "activation_needs_review",
            )
        if not eligibility.valid:
            logger.warning(
                "Promo code no longer applies; activation aborted",
                extra={
                    **log_extra,
                    "promo_code_id": promo_code_id,
                    "reason": eligibility.reason,
                },
            )
            return await _abort_claimed(
                session_factory,
                request,
                authorization,
                ActivationError.PROMO_INELIGIBLE,
                "activation_needs_refund_review" if amount > 0 else None,
                reason=eligibility.reason,
            )
        if eligibility.promo.discount_type == DiscountType.FREE_TRIAL:
            trial_days = eligibility.promo.discount_value

    # Step 2
    try:
        billing = await gateway.issue_billing_key(
            customer_key=f"user_{user_id}", auth_key=authorization.payment_key
        )
    except GatewayError as exc:
        logger.error(
            "Billing key issuance failed after a confirmed charge",
            extra={**log_extra, "step": SagaStep.ISSUE_BILLING_KEY, "code": exc.code},
        )
        return await _abort_claimed(
            session_factory,
            request,
            authorization,
            ActivationError.GATEWAY_SETUP_FAILED,
            "activation_needs_refund_review",
            step=SagaStep.ISSUE_BILLING_KEY,
        )

    # Step 3
    is_trial = trial_days is not None
    try:
        async with session_factory() as session:
            if is_trial:
                period_end = now + timedelta(days=trial_days)
            else:
                effective = await get_effective_settings(session)
                period_end = now + effective.duration_for(plan_type)

            await subscription_repo.cancel_active_subscriptions(session, user_id, now)
            subscription = await subscription_repo.add_subscription(
                session,
                user_id=user_id,
                plan_type=plan_type,
                payment_method=PaymentMethod.CARD,
                started_at=now,
                period_end=period_end,
                price_per_month=0 if is_trial else price_per_month(plan_type, amount),
                total_paid=0 if is_trial else amount,
                billing_key=billing.billing_key,
                last_four_digits=billing.card_last_four,
            )
            claim = await claim_repo.get_claim(session, order_id)
            claim.status = ClaimStatus.COMPLETED
            claim.subscription_id = subscription.id
            await session.commit()
            subscription_id = subscription.id
    except Exception:
        logger.exception(
            "Subscription creation failed after a confirmed charge",
            extra={**log_extra, "step": SagaStep.CREATE_SUBSCRIPTION, "amount": amount},
        )
        return await _abort_claimed(
            session_factory,
            request,
            authorization,
            ActivationError.SUBSCRIPTION_CREATION_FAILED,
            "activation_needs_review",
            step=SagaStep.CREATE_SUBSCRIPTION,
        )

    logger.info(
        "Subscription created",
        extra={**log_extra, "subscription_id": subscription_id, "plan_type": plan_type},
    )
    degraded: list[str] = []

    # Step 4
    try:
        async with session_factory() as session:
            await payment_repo.add_transaction(
                session,
                user_id=user_id,
                subscription_id=subscription_id,
                order_id=order_id,
                amount=amount,
                payment_method=PaymentMethod.CARD,
                gateway_provider=gateway.provider,
                gateway_transaction_id=authorization.gateway_transaction_id,
                paid_at=authorization.approved_at or now,
                meta={"order_id": order_id, "promo_code_id": promo_code_id},
                currency=settings.currency,
                card_info=billing.card_info(),
            )
            await session.commit()
    except Exception:
        logger.exception(
            "Transaction ledger write failed; continuing",
            extra={**log_extra, "step": SagaStep.LOG_TRANSACTION},
        )
        degraded.append(SagaStep.LOG_TRANSACTION)

    # Step 5
    try:
        async with session_factory() as session:
            await user_repo.set_premium(session, user_id, True, period_end)
            if is_trial:
                await user_repo.set_trial_end(session, user_id, period_end)
            await session.commit()
    except Exception:
        logger.exception(
            "Premium flag update failed; left to reconciliation",
            extra={**log_extra, "step": SagaStep.UPDATE_PREMIUM_FLAG},
        )
        degraded.append(SagaStep.UPDATE_PREMIUM_FLAG)
        await _flag_for_review(
            session_factory,
            "premium_flag_sync_failed",
            {**log_extra, "subscription_id": subscription_id},
        )

    # Step 6
    if promo_code_id is not None:
        try:
            async with session_factory() as session:
                await promo_service.record_use(
                    session, promo_code_id, user_id, subscription_id, now=now
                )
        except Exception:
            logger.exception(
                "Promo code use was not recorded; continuing",
                extra={
                    **log_extra,
                    "step": SagaStep.RECORD_PROMO_USE,
                    "promo_code_id": promo_code_id,
                },
            )
            degraded.append(SagaStep.RECORD_PROMO_USE)

    return ActivationResult(
        order_id=order_id,
        outcome=ActivationOutcome.COMPLETED,
        subscription_id=subscription_id,
        expires_at=period_end,
        degraded_steps=tuple(degraded),
    )


async def _abort_claimed(
    session_factory: async_sessionmaker[AsyncSession],
    request: _Request,
    authorization: GatewayAuthorization,
    error: str,
    review_action: str | None,
    step: str | None = None,
    reason: str | None = None,
) -> ActivationResult:
    """Fail the order's claim, leave an audit entry and build the result."""
    await _mark_claim_failed(session_factory, request.order_id, error)
    if review_action is not None:
        await _flag_for_review(
            session_factory,
            review_action,
            {
                "order_id": request.order_id,
                "user_id": request.user_id,
                "step": step,
                "reason": reason,
                "amount": request.amount,
                "gateway_transaction_id": authorization.gateway_transaction_id,
            },
        )
    return ActivationResult.aborted(request.order_id, error, reason=reason)


async def _mark_claim_failed(
    session_factory: async_sessionmaker[AsyncSession], order_id: str, error_code: str
) -> None:
    try:
        async with session_factory() as session:
            await claim_repo.fail_pending_claim(
                session, order_id, error_code, datetime.now(timezone.utc)
            )
            await session.commit()
    except Exception:
        logger.exception("Failed to mark activation claim as failed", extra={"order_id": order_id})


async def confirm_and_activate(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
    payment_key: str,
    order_id: str,
    user_id: int,
    plan_type: str,
    amount: int,
    promo_code_id: int | None = None,
) -> ActivationResult:
    """Run the gateway confirmation round trip, then activate."""
    ensure_plan_type(plan_type)
    existing = await find_existing_activation(
        session_factory, order_id, user_id, plan_type, amount, promo_code_id
    )
    if existing is not None:
        return existing

    try:
        authorization = await gateway.confirm_payment(payment_key, order_id, amount)
    except GatewayError as exc:
        logger.warning(
            "Gateway confirmation failed",
            extra={
                "order_id": order_id,
                "user_id": user_id,
                "step": SagaStep.GATEWAY_CONFIRMED,
                "code": exc.code,
            },
        )
        return ActivationResult.aborted(order_id, ActivationError.PAYMENT_DECLINED)

    return await activate(
        session_factory,
        gateway,
        order_id=order_id,
        user_id=user_id,
        plan_type=plan_type,
        amount=amount,
        authorization=authorization,
        promo_code_id=promo_code_id,
    )
