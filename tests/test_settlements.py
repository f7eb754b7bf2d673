from datetime import datetime, timedelta, timezone

import pytest

from billing.db.models import PaymentMethod, PaymentTransaction, TransactionStatus
from billing.errors import ValidationError
from billing.services import settlements
from billing.services.settlements import Channel


def _transaction(
    amount: int,
    payment_method: str = PaymentMethod.CARD,
    meta: dict | None = None,
    status: str = TransactionStatus.COMPLETED,
    created_at: datetime | None = None,
    order_id: str | None = None,
) -> PaymentTransaction:
    return PaymentTransaction(
        user_id=1,
        order_id=order_id,
        status=status,
        payment_method=payment_method,
        gateway_provider="mock_gateway",
        amount=amount,
        tax_amount=0,
        net_amount=amount,
        currency="KRW",
        meta=meta if meta is not None else {},
        created_at=created_at or datetime.now(timezone.utc),
    )


@pytest.fixture
def store(session_factory):
    async def _store(*transactions: PaymentTransaction) -> list[PaymentTransaction]:
        async with session_factory() as session:
            session.add_all(transactions)
            await session.commit()
        return list(transactions)

    return _store


def test_channel_classification_order():
    promo_by_meta = _transaction(100, PaymentMethod.CASH, meta={"promo_code_id": 3})
    promo_by_method = _transaction(100, PaymentMethod.PROMO_CODE)
    cash = _transaction(100, PaymentMethod.CASH, meta={"promo_code_id": None})
    card = _transaction(100, PaymentMethod.CARD)
    admin = _transaction(0, PaymentMethod.ADMIN_GRANTED)

    assert settlements.channel_for(promo_by_meta) == Channel.PROMO_CODE
    assert settlements.channel_for(promo_by_method) == Channel.PROMO_CODE
    assert settlements.channel_for(cash) == Channel.CASH
    assert settlements.channel_for(card) == Channel.CARD
    assert settlements.channel_for(admin) == Channel.CARD


def test_classify_partitions_every_transaction_once():
    transactions = [
        _transaction(9900),
        _transaction(5000, PaymentMethod.CASH),
        _transaction(7920, meta={"promo_code_id": 1}),
        _transaction(0, PaymentMethod.PROMO_CODE),
    ]

    report = settlements.classify(transactions)

    assert len(report.all) == 4
    assert len(report.card) + len(report.cash) + len(report.promo_code_only) == 4
    parts = [*report.card, *report.cash, *report.promo_code_only]
    assert {id(tx) for tx in parts} == {id(tx) for tx in transactions}
    assert [tx.amount for tx in report.promo_code_only] == [7920, 0]


async def test_get_settlement_filters_by_range_and_channel(session, store):
    base = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
    await store(
        _transaction(9900, created_at=base - timedelta(days=40)),
        _transaction(9900, created_at=base),
        _transaction(5000, PaymentMethod.CASH, created_at=base + timedelta(hours=1)),
        _transaction(7920, meta={"promo_code_id": 1}, created_at=base + timedelta(hours=2)),
    )

    report = await settlements.get_settlement(
        session, start=base - timedelta(days=1), end=base + timedelta(days=1)
    )
    assert len(report.all) == 3
    assert [tx.amount for tx in report.all] == [7920, 5000, 9900]

    cash_only = await settlements.get_settlement(session, channel=Channel.CASH)
    assert [tx.amount for tx in cash_only.all] == [5000]
    assert cash_only.card == [] and cash_only.promo_code_only == []


async def test_get_settlement_rejects_bad_input(session):
    with pytest.raises(ValidationError) as exc_info:
        await settlements.get_settlement(session, channel="bitcoin")
    assert exc_info.value.code == "invalid_channel"

    now = datetime.now(timezone.utc)
    with pytest.raises(ValidationError) as exc_info:
        await settlements.get_settlement(session, start=now, end=now - timedelta(days=1))
    assert exc_info.value.code == "invalid_range"


def test_build_statistics_buckets_newest_first():
    transactions = [
        _transaction(9900, created_at=datetime(2026, 2, 1, 9, tzinfo=timezone.utc)),
        _transaction(
            5000,
            PaymentMethod.CASH,
            created_at=datetime(2026, 2, 1, 18, tzinfo=timezone.utc),
        ),
        _transaction(
            7920,
            meta={"promo_code_id": 2},
            status=TransactionStatus.REFUNDED,
            created_at=datetime(2025, 12, 31, 23, tzinfo=timezone.utc),
        ),
    ]

    report = settlements.build_statistics(transactions)

    assert list(report.daily) == ["2026-02-01", "2025-12-31"]
    assert list(report.monthly) == ["2026-02", "2025-12"]
    assert list(report.yearly) == ["2026", "2025"]

    day = report.daily["2026-02-01"]
    assert day.total_amount == 14900
    assert day.total_transactions == 2
    assert day.channel_amounts == {Channel.CARD: 9900, Channel.CASH: 5000, Channel.PROMO_CODE: 0}

    overall = report.overall
    assert overall.total_amount == 22820
    assert overall.total_transactions == 3
    assert overall.channel_transactions[Channel.PROMO_CODE] == 1
    assert overall.status_amounts[TransactionStatus.COMPLETED] == 14900
    assert overall.status_amounts[TransactionStatus.REFUNDED] == 7920
    assert overall.status_transactions[TransactionStatus.PENDING] == 0


async def test_statistics_of_empty_ledger(session):
    report = await settlements.get_settlement_statistics(session)

    assert report.daily == {}
    assert report.overall.total_amount == 0
    assert report.overall.total_transactions == 0


async def test_mark_refunded(session_factory, store):
    completed, pending = await store(
        _transaction(9900, order_id="order-a"),
        _transaction(9900, status=TransactionStatus.PENDING, order_id="order-b"),
    )

    async with session_factory() as session:
        refunded = await settlements.mark_refunded(session, completed.id)
        await session.commit()
        assert refunded.status == TransactionStatus.REFUNDED

        again = await settlements.mark_refunded(session, completed.id)
        assert again.status == TransactionStatus.REFUNDED

        with pytest.raises(ValidationError) as exc_info:
            await settlements.mark_refunded(session, pending.id)
        assert exc_info.value.code == "invalid_transaction_status"

        with pytest.raises(ValidationError) as exc_info:
            await settlements.mark_refunded(session, 12345)
        assert exc_info.value.code == "transaction_not_found"
