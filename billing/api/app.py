from datetime import datetime, timezone
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.api import schemas
from billing.db.models import PlanType
from billing.db.session import AsyncSessionLocal
from billing.errors import (
    BillingError,
    ConsistencyViolation,
    GatewayError,
    PersistenceError,
    ValidationError,
)
from billing.payments.adapter import PaymentGateway
from billing.payments.factory import build_gateway
from billing.repositories import promos as promo_repo
from billing.services import activation as activation_service
from billing.services import admin_override
from billing.services import checkout as checkout_service
from billing.services import promos as promo_service
from billing.services import settlements as settlement_service
from billing.services import settings as settings_service
from billing.services.activation import ActivationError
from config import settings


logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    GatewayError: 502,
    PersistenceError: 500,
    ConsistencyViolation: 409,
}

ACTIVATION_ERROR_STATUS = {
    ActivationError.PAYMENT_DECLINED: 402,
    ActivationError.GATEWAY_SETUP_FAILED: 502,
    ActivationError.SUBSCRIPTION_CREATION_FAILED: 500,
    ActivationError.CONSISTENCY_VIOLATION: 409,
    ActivationError.ACTIVATION_IN_PROGRESS: 409,
    ActivationError.PROMO_INELIGIBLE: 422,
}


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    gateway: PaymentGateway | None = None,
    admin_user_ids: list[int] | None = None,
) -> FastAPI:
    app = FastAPI(title="Subscription billing")
    session_factory = session_factory or AsyncSessionLocal
    gateway = gateway or build_gateway()
    admin_ids = set(admin_user_ids if admin_user_ids is not None else settings.admin_user_ids)

    async def get_session():
        async with session_factory() as session:
            yield session

    async def require_admin(x_admin_id: int | None = Header(default=None)) -> int:
        # Identity is established upstream; this only checks the allow-list.
        if x_admin_id is None or x_admin_id not in admin_ids:
            raise HTTPException(status_code=403, detail="Administrator access required")
        return x_admin_id

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "code": exc.code},
            )
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": exc.code, "message": exc.message},
        )

    @app.post("/api/checkout", response_model=schemas.CheckoutResponse)
    async def create_checkout(
        body: schemas.CheckoutRequest, session: AsyncSession = Depends(get_session)
    ):
        checkout = await checkout_service.create_checkout(
            session, gateway, body.user_id, body.plan_type, body.promo_code
        )
        summary = checkout.discount_summary
        return schemas.CheckoutResponse(
            order_id=checkout.order_id,
            checkout_url=checkout.checkout_url,
            plan_type=checkout.plan_type,
            base_amount=checkout.base_amount,
            final_amount=checkout.final_amount,
            discount_summary=(
                schemas.DiscountSummaryOut(**summary.__dict__) if summary else None
            ),
        )

    @app.post("/api/promo-codes/validate", response_model=schemas.PromoValidationResponse)
    async def validate_promo_code(
        body: schemas.PromoValidationRequest, session: AsyncSession = Depends(get_session)
    ):
        result = await promo_service.check_eligibility(
            session, body.code, body.plan_type, body.user_id
        )
        if not result.valid:
            return schemas.PromoValidationResponse(
                valid=False, reason=result.reason, message=result.message
            )
        return schemas.PromoValidationResponse(
            valid=True,
            promo_code_id=result.promo.id,
            discount_type=result.promo.discount_type,
            discount_value=result.promo.discount_value,
            original_price=result.discount.base_price,
            final_price=result.discount.final_price,
            free_trial_days=result.discount.free_trial_days,
        )

    @app.post("/api/payments/confirm", response_model=schemas.ActivationResponse)
    async def confirm_payment(body: schemas.ConfirmPaymentRequest):
        result = await activation_service.confirm_and_activate(
            session_factory,
            gateway,
            payment_key=body.payment_key,
            order_id=body.order_id,
            user_id=body.user_id,
            plan_type=body.plan_type,
            amount=body.amount,
            promo_code_id=body.promo_code_id,
        )
        response = schemas.ActivationResponse(
            success=result.ok,
            order_id=result.order_id,
            subscription_id=result.subscription_id,
            expires_at=result.expires_at,
            replayed=result.replayed,
            error=result.error,
            reason=result.reason,
            message=result.message,
        )
        if result.ok:
            return response
        return JSONResponse(
            status_code=ACTIVATION_ERROR_STATUS.get(result.error, 500),
            content=response.model_dump(mode="json"),
        )

    @app.post("/api/admin/premium/grant", response_model=schemas.GrantPremiumResponse)
    async def grant_premium(
        body: schemas.GrantPremiumRequest, admin_id: int = Depends(require_admin)
    ):
        result = await admin_override.grant_premium(
            session_factory,
            admin_user_id=admin_id,
            target_user_id=body.target_user_id,
            plan_type=body.plan_type,
            duration_days=body.duration_days,
        )
        return schemas.GrantPremiumResponse(
            subscription_id=result.subscription_id, expires_at=result.expires_at
        )

    @app.post("/api/admin/premium/revoke", response_model=schemas.RevokePremiumResponse)
    async def revoke_premium(
        body: schemas.RevokePremiumRequest, admin_id: int = Depends(require_admin)
    ):
        result = await admin_override.revoke_premium(
            session_factory, admin_user_id=admin_id, target_user_id=body.target_user_id
        )
        return schemas.RevokePremiumResponse(ok=True, was_active=result.was_active)

    @app.get("/api/admin/settlements", response_model=schemas.SettlementResponse)
    async def get_settlement(
        start: datetime | None = Query(default=None),
        end: datetime | None = Query(default=None),
        channel: str | None = Query(default=None),
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        report = await settlement_service.get_settlement(
            session, start=start, end=end, channel=channel
        )

        def _out(transactions):
            return [schemas.TransactionOut.model_validate(tx) for tx in transactions]

        return schemas.SettlementResponse(
            card=_out(report.card),
            cash=_out(report.cash),
            promo_code_only=_out(report.promo_code_only),
            all=_out(report.all),
        )

    @app.get(
        "/api/admin/settlements/statistics", response_model=schemas.StatisticsResponse
    )
    async def get_statistics(
        start: datetime | None = Query(default=None),
        end: datetime | None = Query(default=None),
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        report = await settlement_service.get_settlement_statistics(
            session, start=start, end=end
        )

        def _out(stats):
            return schemas.StatisticsOut(**stats.__dict__)

        return schemas.StatisticsResponse(
            daily={key: _out(value) for key, value in report.daily.items()},
            monthly={key: _out(value) for key, value in report.monthly.items()},
            yearly={key: _out(value) for key, value in report.yearly.items()},
            overall=_out(report.overall),
        )

    def _promo_out(promo) -> schemas.PromoCodeOut:
        now = datetime.now(timezone.utc)
        return schemas.PromoCodeOut(
            id=promo.id,
            code=promo.code,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            max_uses=promo.max_uses,
            current_uses=promo.current_uses,
            valid_from=promo.valid_from,
            valid_until=promo.valid_until,
            applicable_plans=promo.applicable_plans,
            new_users_only=promo.new_users_only,
            description=promo.description,
            status=promo_service.promo_status(promo, now),
        )

    @app.post("/api/admin/promo-codes", response_model=schemas.PromoCodeOut, status_code=201)
    async def create_promo_code(
        body: schemas.PromoCodeCreateRequest,
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        promo = await promo_service.create_promo_code(session, **body.model_dump())
        await session.commit()
        return _promo_out(promo)

    @app.get("/api/admin/promo-codes", response_model=list[schemas.PromoCodeOut])
    async def list_promo_codes(
        limit: int = Query(default=50, ge=1, le=500),
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        return [_promo_out(promo) for promo in await promo_repo.list_promo_codes(session, limit)]

    @app.post(
        "/api/admin/transactions/{transaction_id}/refund",
        response_model=schemas.TransactionOut,
    )
    async def refund_transaction(
        transaction_id: int,
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        transaction = await settlement_service.mark_refunded(session, transaction_id)
        await session.commit()
        return schemas.TransactionOut.model_validate(transaction)

    @app.get("/api/admin/settings/prices", response_model=schemas.PlanPricesResponse)
    async def get_plan_prices(
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        effective = await settings_service.get_effective_settings(session)
        return schemas.PlanPricesResponse(
            monthly_price=effective.monthly_price, yearly_price=effective.yearly_price
        )

    @app.put("/api/admin/settings/prices", response_model=schemas.PlanPricesResponse)
    async def update_plan_prices(
        body: schemas.PlanPricesRequest,
        admin_id: int = Depends(require_admin),
        session: AsyncSession = Depends(get_session),
    ):
        prices = {
            plan_type: price
            for plan_type, price in (
                (PlanType.MONTHLY, body.monthly_price),
                (PlanType.YEARLY, body.yearly_price),
            )
            if price is not None
        }
        effective = await settings_service.update_plan_prices(session, admin_id, prices)
        await session.commit()
        return schemas.PlanPricesResponse(
            monthly_price=effective.monthly_price, yearly_price=effective.yearly_price
        )

    return app
