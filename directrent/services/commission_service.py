"""
Commission ledger - splits a completed booking's gross into platform
commission and provider payout, and keeps the provider's withdrawable balance.

Amounts are integer pesewas, rates basis points. The payout is always
gross - commission, so the two always sum to gross exactly.
"""
import logging
import uuid
from typing import Optional, List, Dict, NamedTuple
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from directrent.config import config
from directrent.database.models import (
    User, CommissionRecord, ProviderBalance, Withdrawal, SubscriptionPayment,
    Booking, BookingStatus, PayoutMethod, WithdrawalStatus, UserRole
)
from directrent.errors import (
    DuplicateCommission, InsufficientBalance, InvalidAmount, IllegalTransition,
    NotFound, ConcurrentModification, Forbidden
)
from directrent.services.entitlement_service import effective_tier
from directrent.utils.clock import utcnow
from directrent.utils.locks import KeyedLock
from directrent.utils.money import percent_of, format_amount

_provider_locks = KeyedLock()


class CommissionSplit(NamedTuple):
    gross: int
    rate_bps: int
    commission: int
    payout: int


class BalanceInfo(NamedTuple):
    provider_id: int
    available: int
    pending: int


class ProviderEarnings(NamedTuple):
    provider_id: int
    total_payouts: int  # all payouts credited, ever
    total_commissions: int
    completed_bookings: int
    available: int
    pending: int
    withdrawn: int  # settled withdrawals
    recent: List[CommissionRecord]


class PlatformRevenue(NamedTuple):
    commission_revenue: int
    subscription_revenue: int
    booking_volume: int
    total_bookings: int
    users_by_tier: Dict[str, int]


def split_commission(gross: int, rate_bps: int) -> CommissionSplit:
    """
    Split gross into (commission, payout).

    commission = round-half-up(gross * rate); payout = gross - commission.
    """
    if gross <= 0:
        raise InvalidAmount(f"Gross amount must be positive, got {gross}", gross=gross)
    commission = percent_of(gross, rate_bps)
    return CommissionSplit(gross=gross, rate_bps=rate_bps, commission=commission, payout=gross - commission)


async def _lock_balance(session: AsyncSession, provider_id: int) -> Optional[ProviderBalance]:
    stmt = (
        select(ProviderBalance)
        .where(ProviderBalance.provider_id == provider_id)
        .with_for_update()  # Row-level lock
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _get_or_create_balance(session: AsyncSession, provider_id: int) -> ProviderBalance:
    balance = await _lock_balance(session, provider_id)
    if balance:
        return balance

    balance = ProviderBalance(provider_id=provider_id, available=0, pending=0)
    session.add(balance)
    try:
        await session.flush()
    except IntegrityError as e:
        # Another transaction created the row first; the caller retries
        raise ConcurrentModification(f"Balance for provider {provider_id} created concurrently") from e
    return balance


async def record_commission(
    session: AsyncSession,
    booking_id: int,
    gross_amount: int,
    provider_id: int
) -> CommissionRecord:
    """
    Create the commission record and credit the payout, without committing.

    Used by booking completion so that the status change and the ledger
    entry land in one transaction. Callers must roll back on any exception.

    Raises:
        NotFound: no such booking
        IllegalTransition: the booking is not COMPLETED
        Forbidden: provider_id is not the booking's provider
        DuplicateCommission: a record already exists for the booking
    """
    result = await session.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound(f"Booking {booking_id} not found", booking_id=booking_id)
    if booking.status != BookingStatus.COMPLETED.value:
        raise IllegalTransition(
            f"Booking {booking_id} is {booking.status}, commission is posted only on completion",
            current=booking.status
        )
    if booking.provider_id != provider_id:
        raise Forbidden(f"Provider {provider_id} is not the provider of booking {booking_id}")

    existing = await session.execute(
        select(CommissionRecord.id).where(CommissionRecord.booking_id == booking_id)
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateCommission(f"Commission already posted for booking {booking_id}", booking_id=booking_id)

    provider = await session.get(User, provider_id)
    if not provider:
        raise NotFound(f"Provider {provider_id} not found", provider_id=provider_id)

    tier = effective_tier(provider)
    split = split_commission(gross_amount, tier.commission_bps)

    record = CommissionRecord(
        booking_id=booking_id,
        provider_id=provider_id,
        gross_amount=split.gross,
        rate_bps=split.rate_bps,
        commission_amount=split.commission,
        payout_amount=split.payout,
        tier_code=tier.code
    )
    session.add(record)
    try:
        await session.flush()
    except IntegrityError as e:
        raise DuplicateCommission(f"Commission already posted for booking {booking_id}", booking_id=booking_id) from e

    await _get_or_create_balance(session, provider_id)
    await session.execute(
        update(ProviderBalance)
        .where(ProviderBalance.provider_id == provider_id)
        .values(available=ProviderBalance.available + split.payout)
        .execution_options(synchronize_session=False)
    )

    logging.info(
        f"Commission for booking {booking_id}: gross {format_amount(split.gross)}, "
        f"rate {split.rate_bps}bps ({tier.code}), commission {format_amount(split.commission)}, "
        f"payout {format_amount(split.payout)} to provider {provider_id}"
    )
    return record


async def post_completion(
    session: AsyncSession,
    booking_id: int,
    gross_amount: int,
    provider_id: int
) -> CommissionRecord:
    """
    Post the commission for a completed booking and credit the provider.

    At most once per booking: a second call raises DuplicateCommission and
    changes nothing.
    """
    try:
        record = await record_commission(session, booking_id, gross_amount, provider_id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return record


async def withdraw(
    session: AsyncSession,
    provider_id: int,
    amount: int,
    payout_method: str,
    account_ref: str,
    account_name: Optional[str] = None
) -> Withdrawal:
    """
    Request a payout of `amount` pesewas from the provider's available balance.

    The amount moves from available to pending immediately; payout execution
    is external and reported back through settle_withdrawal.

    Raises:
        InvalidAmount: outside PAYOUT_MIN_AMOUNT..PAYOUT_MAX_AMOUNT
        InsufficientBalance: amount exceeds the available balance
    """
    method = PayoutMethod(payout_method)
    if not account_ref or not account_ref.strip():
        raise ValueError("Account reference is required")
    if amount < config.PAYOUT_MIN_AMOUNT or amount > config.PAYOUT_MAX_AMOUNT:
        raise InvalidAmount(
            f"Withdrawal must be between {format_amount(config.PAYOUT_MIN_AMOUNT)} "
            f"and {format_amount(config.PAYOUT_MAX_AMOUNT)}",
            amount=amount
        )

    async with _provider_locks.hold(provider_id):
        try:
            balance = await _lock_balance(session, provider_id)
            available = balance.available if balance else 0
            if available < amount:
                raise InsufficientBalance(
                    f"Provider {provider_id} has {format_amount(available)} available, requested {format_amount(amount)}",
                    available=available,
                    requested=amount
                )

            # Conditional debit: never takes available below zero
            result = await session.execute(
                update(ProviderBalance)
                .where(ProviderBalance.provider_id == provider_id, ProviderBalance.available >= amount)
                .values(
                    available=ProviderBalance.available - amount,
                    pending=ProviderBalance.pending + amount
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientBalance(
                    f"Provider {provider_id} balance changed during withdrawal",
                    requested=amount
                )

            withdrawal = Withdrawal(
                reference=f"PAYOUT-{uuid.uuid4().hex[:12].upper()}",
                provider_id=provider_id,
                amount=amount,
                method=method.value,
                account_ref=account_ref.strip(),
                account_name=account_name,
                status=WithdrawalStatus.PENDING.value
            )
            session.add(withdrawal)
            await session.commit()
            await session.refresh(withdrawal)

        except InsufficientBalance:
            await session.rollback()
            logging.warning(f"Withdrawal of {format_amount(amount)} refused for provider {provider_id}: insufficient balance")
            raise
        except Exception:
            await session.rollback()
            raise

    logging.info(f"Withdrawal {withdrawal.reference} of {format_amount(amount)} requested by provider {provider_id} via {method.value}")
    return withdrawal


async def settle_withdrawal(session: AsyncSession, withdrawal_id: int, succeeded: bool) -> Withdrawal:
    """
    Record the outcome of an external payout.

    Success releases the pending amount; failure returns it to available.
    Only PENDING withdrawals can be settled.
    """
    try:
        stmt = (
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise NotFound(f"Withdrawal {withdrawal_id} not found", withdrawal_id=withdrawal_id)

        new_status = WithdrawalStatus.COMPLETED if succeeded else WithdrawalStatus.FAILED
        swap = await session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == WithdrawalStatus.PENDING.value)
            .values(status=new_status.value, settled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if swap.rowcount != 1:
            raise IllegalTransition(
                f"Withdrawal {withdrawal_id} is {withdrawal.status}, cannot settle",
                status=withdrawal.status
            )

        values = {"pending": ProviderBalance.pending - withdrawal.amount}
        if not succeeded:
            values["available"] = ProviderBalance.available + withdrawal.amount
        await session.execute(
            update(ProviderBalance)
            .where(ProviderBalance.provider_id == withdrawal.provider_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(withdrawal)
    except Exception:
        await session.rollback()
        raise

    logging.info(f"Withdrawal {withdrawal.reference} settled as {new_status.value}")
    return withdrawal


async def get_provider_balance(session: AsyncSession, provider_id: int) -> BalanceInfo:
    balance = await session.get(ProviderBalance, provider_id, populate_existing=True)
    if not balance:
        return BalanceInfo(provider_id=provider_id, available=0, pending=0)
    return BalanceInfo(provider_id=provider_id, available=balance.available, pending=balance.pending)


async def get_commission_record(session: AsyncSession, booking_id: int) -> Optional[CommissionRecord]:
    stmt = select(CommissionRecord).where(CommissionRecord.booking_id == booking_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_withdrawals(session: AsyncSession, provider_id: int) -> List[Withdrawal]:
    """Payout history for a provider, newest first"""
    stmt = (
        select(Withdrawal)
        .where(Withdrawal.provider_id == provider_id)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_provider_earnings(session: AsyncSession, provider_id: int, recent_limit: int = 10) -> ProviderEarnings:
    """Lifetime earnings for a provider plus the latest commission records."""
    totals_stmt = select(
        func.coalesce(func.sum(CommissionRecord.payout_amount), 0),
        func.coalesce(func.sum(CommissionRecord.commission_amount), 0),
        func.count(CommissionRecord.id)
    ).where(CommissionRecord.provider_id == provider_id)
    totals = (await session.execute(totals_stmt)).one()

    withdrawn_stmt = select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
        Withdrawal.provider_id == provider_id,
        Withdrawal.status == WithdrawalStatus.COMPLETED.value
    )
    withdrawn = (await session.execute(withdrawn_stmt)).scalar()

    recent_stmt = (
        select(CommissionRecord)
        .where(CommissionRecord.provider_id == provider_id)
        .order_by(CommissionRecord.created_at.desc(), CommissionRecord.id.desc())
        .limit(recent_limit)
    )
    recent = list((await session.execute(recent_stmt)).scalars().all())

    balance = await get_provider_balance(session, provider_id)

    return ProviderEarnings(
        provider_id=provider_id,
        total_payouts=int(totals[0]),
        total_commissions=int(totals[1]),
        completed_bookings=int(totals[2]),
        available=balance.available,
        pending=balance.pending,
        withdrawn=int(withdrawn),
        recent=recent
    )


async def get_platform_revenue(session: AsyncSession) -> PlatformRevenue:
    """Platform-wide commission and subscription revenue."""
    commission_stmt = select(
        func.coalesce(func.sum(CommissionRecord.commission_amount), 0),
        func.coalesce(func.sum(CommissionRecord.gross_amount), 0)
    )
    commission_revenue, booking_volume = (await session.execute(commission_stmt)).one()

    subscription_stmt = select(func.coalesce(func.sum(SubscriptionPayment.amount_paid), 0))
    subscription_revenue = (await session.execute(subscription_stmt)).scalar()

    bookings_stmt = select(func.count(Booking.id)).where(Booking.status == BookingStatus.COMPLETED.value)
    total_bookings = (await session.execute(bookings_stmt)).scalar()

    tier_stmt = (
        select(User.subscription_tier, func.count(User.id))
        .where(User.is_active == True, User.role == UserRole.SERVICE_PROVIDER.value)
        .group_by(User.subscription_tier)
    )
    users_by_tier = {tier: count for tier, count in (await session.execute(tier_stmt)).all()}

    return PlatformRevenue(
        commission_revenue=int(commission_revenue),
        subscription_revenue=int(subscription_revenue),
        booking_volume=int(booking_volume),
        total_bookings=int(total_bookings),
        users_by_tier=users_by_tier
    )
