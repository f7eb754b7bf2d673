from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import PaymentTransaction, TransactionStatus, TransactionType


async def get_transaction_by_id(
    session: AsyncSession, transaction_id: int
) -> PaymentTransaction | None:
    result = await session.execute(
        select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
    )
    return result.scalar_one_or_none()


async def add_transaction(
    session: AsyncSession,
    user_id: int,
    subscription_id: int | None,
    order_id: str | None,
    amount: int,
    payment_method: str,
    gateway_provider: str,
    gateway_transaction_id: str | None,
    paid_at: datetime | None,
    meta: dict,
    currency: str,
    card_info: dict | None = None,
    status: str = TransactionStatus.COMPLETED,
    transaction_type: str = TransactionType.SUBSCRIPTION,
) -> PaymentTransaction:
    transaction = PaymentTransaction(
        user_id=user_id,
        subscription_id=subscription_id,
        order_id=order_id,
        status=status,
        transaction_type=transaction_type,
        payment_method=payment_method,
        gateway_provider=gateway_provider,
        gateway_transaction_id=gateway_transaction_id,
        amount=amount,
        tax_amount=0,
        net_amount=amount,
        currency=currency,
        card_info=card_info,
        paid_at=paid_at,
        meta=meta,
    )
    session.add(transaction)
    await session.flush()
    return transaction


async def list_transactions(
    session: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[PaymentTransaction]:
    query = select(PaymentTransaction)
    if start is not None:
        query = query.where(PaymentTransaction.created_at >= start)
    if end is not None:
        query = query.where(PaymentTransaction.created_at <= end)
    result = await session.execute(
        query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
    )
    return list(result.scalars().all())
