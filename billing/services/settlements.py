from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import PaymentMethod, PaymentTransaction, TransactionStatus, as_utc
from billing.errors import ValidationError
from billing.repositories import payments as payment_repo


logger = logging.getLogger(__name__)


class Channel(str):
    CARD = "card"
    CASH = "cash"
    PROMO_CODE = "promo_code"

    ALL = (CARD, CASH, PROMO_CODE)


@dataclass
class SettlementReport:
    card: list[PaymentTransaction] = field(default_factory=list)
    cash: list[PaymentTransaction] = field(default_factory=list)
    promo_code_only: list[PaymentTransaction] = field(default_factory=list)
    all: list[PaymentTransaction] = field(default_factory=list)


@dataclass
class SettlementStatistics:
    total_amount: int = 0
    total_transactions: int = 0
    channel_amounts: dict[str, int] = field(
        default_factory=lambda: {channel: 0 for channel in Channel.ALL}
    )
    channel_transactions: dict[str, int] = field(
        default_factory=lambda: {channel: 0 for channel in Channel.ALL}
    )
    status_amounts: dict[str, int] = field(
        default_factory=lambda: {status: 0 for status in TransactionStatus.ALL}
    )
    status_transactions: dict[str, int] = field(
        default_factory=lambda: {status: 0 for status in TransactionStatus.ALL}
    )

    def add(self, transaction: PaymentTransaction) -> None:
        amount = transaction.amount or 0
        channel = channel_for(transaction)
        self.total_amount += amount
        self.total_transactions += 1
        self.channel_amounts[channel] += amount
        self.channel_transactions[channel] += 1
        if transaction.status in self.status_amounts:
            self.status_amounts[transaction.status] += amount
            self.status_transactions[transaction.status] += 1


@dataclass
class StatisticsReport:
    daily: dict[str, SettlementStatistics]
    monthly: dict[str, SettlementStatistics]
    yearly: dict[str, SettlementStatistics]
    overall: SettlementStatistics


def channel_for(transaction: PaymentTransaction) -> str:
    """First match wins: promo code, then cash, card for everything else."""
    meta = transaction.meta or {}
    if meta.get("promo_code_id") is not None:
        return Channel.PROMO_CODE
    if transaction.payment_method == PaymentMethod.PROMO_CODE:
        return Channel.PROMO_CODE
    if transaction.payment_method == PaymentMethod.CASH:
        return Channel.CASH
    return Channel.CARD


def classify(transactions: Iterable[PaymentTransaction]) -> SettlementReport:
    report = SettlementReport()
    for transaction in transactions:
        report.all.append(transaction)
        channel = channel_for(transaction)
        if channel == Channel.PROMO_CODE:
            report.promo_code_only.append(transaction)
        elif channel == Channel.CASH:
            report.cash.append(transaction)
        else:
            report.card.append(transaction)
    return report


async def get_settlement(
    session: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
    channel: str | None = None,
) -> SettlementReport:
    if channel is not None and channel not in Channel.ALL:
        raise ValidationError(f"Unknown channel: {channel}", code="invalid_channel")
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end", code="invalid_range")

    transactions = await payment_repo.list_transactions(session, start=start, end=end)
    if channel is not None:
        transactions = [tx for tx in transactions if channel_for(tx) == channel]
    return classify(transactions)


def build_statistics(transactions: Iterable[PaymentTransaction]) -> StatisticsReport:
    daily: dict[str, SettlementStatistics] = {}
    monthly: dict[str, SettlementStatistics] = {}
    yearly: dict[str, SettlementStatistics] = {}
    overall = SettlementStatistics()

    for transaction in transactions:
        created_at = as_utc(transaction.created_at)
        keys = (
            (daily, created_at.strftime("%Y-%m-%d")),
            (monthly, created_at.strftime("%Y-%m")),
            (yearly, created_at.strftime("%Y")),
        )
        for buckets, key in keys:
            buckets.setdefault(key, SettlementStatistics()).add(transaction)
        overall.add(transaction)

    def _newest_first(buckets: dict[str, SettlementStatistics]) -> dict[str, SettlementStatistics]:
        return dict(sorted(buckets.items(), reverse=True))

    return StatisticsReport(
        daily=_newest_first(daily),
        monthly=_newest_first(monthly),
        yearly=_newest_first(yearly),
        overall=overall,
    )


async def get_settlement_statistics(
    session: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> StatisticsReport:
    transactions = await payment_repo.list_transactions(session, start=start, end=end)
    return build_statistics(transactions)


async def mark_refunded(session: AsyncSession, transaction_id: int) -> PaymentTransaction:
    # Commit is done by the caller.
    transaction = await payment_repo.get_transaction_by_id(session, transaction_id)
    if transaction is None:
        raise ValidationError("Transaction not found", code="transaction_not_found")
    if transaction.status == TransactionStatus.REFUNDED:
        return transaction
    if transaction.status != TransactionStatus.COMPLETED:
        raise ValidationError(
            "Only completed transactions can be refunded", code="invalid_transaction_status"
        )
    transaction.status = TransactionStatus.REFUNDED
    logger.info(
        "Transaction marked refunded",
        extra={"transaction_id": transaction.id, "order_id": transaction.order_id},
    )
    return transaction
