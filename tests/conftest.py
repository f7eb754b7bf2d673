from datetime import datetime, timedelta, timezone

import pytest

from billing.db import models  # noqa: F401
from billing.db.base import Base
from billing.db.models import DiscountType, PromoCode, User
from billing.db.session import create_session_factory
from billing.payments.adapter import AuthorizationStatus, GatewayAuthorization
from billing.payments.mock_adapter import MockPaymentGateway


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return MockPaymentGateway(base_url="http://testserver")


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def make_user(session_factory):
    async def _make(user_id: int, **fields) -> User:
        async with session_factory() as session:
            user = User(id=user_id, **{"is_premium": False, **fields})
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def make_promo(session_factory, now):
    async def _make(
        code: str = "WELCOME20",
        discount_type: str = DiscountType.PERCENTAGE,
        discount_value: int = 20,
        max_uses: int | None = None,
        current_uses: int = 0,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        applicable_plans: list[str] | None = None,
        new_users_only: bool = False,
    ) -> PromoCode:
        async with session_factory() as session:
            promo = PromoCode(
                code=code,
                discount_type=discount_type,
                discount_value=discount_value,
                max_uses=max_uses,
                current_uses=current_uses,
                valid_from=valid_from or now - timedelta(days=1),
                valid_until=valid_until or now + timedelta(days=30),
                applicable_plans=applicable_plans,
                new_users_only=new_users_only,
            )
            session.add(promo)
            await session.commit()
            return promo

    return _make


@pytest.fixture
def authorize():
    def _authorize(order_id: str, amount: int, status: str = AuthorizationStatus.DONE):
        return GatewayAuthorization(
            status=status,
            order_id=order_id,
            amount=amount,
            payment_key=f"pk_{order_id}",
            gateway_transaction_id=f"pk_{order_id}",
            approved_at=datetime.now(timezone.utc),
        )

    return _authorize
