import pytest
from datetime import timedelta
from sqlalchemy import select, update

from directrent.database.models import Booking, BookingStatus, ProviderBalance, Withdrawal, WithdrawalStatus
from directrent.errors import (
    DuplicateCommission, Forbidden, IllegalTransition, InsufficientBalance, InvalidAmount, NotFound
)
from directrent.services.booking_service import (
    complete_booking, confirm_booking, create_booking, start_booking
)
from directrent.services.commission_service import (
    get_commission_record, get_platform_revenue, get_provider_balance, get_provider_earnings,
    list_withdrawals, post_completion, settle_withdrawal, split_commission, withdraw
)
from directrent.services.entitlement_service import apply_subscription
from directrent.utils.clock import utcnow


async def _completed_booking(session, customer, provider, gross):
    booking = await create_booking(
        session, customer.id, provider.id, utcnow().date() + timedelta(days=1), "5 Castle Road", "Accra"
    )
    await confirm_booking(session, booking.id)
    await start_booking(session, booking.id)
    return await complete_booking(session, booking.id, gross_amount=gross)


async def _fund(session, provider_id, available):
    session.add(ProviderBalance(provider_id=provider_id, available=available, pending=0))
    await session.commit()


@pytest.mark.parametrize("gross, rate_bps, commission", [
    (15_000, 1_200, 1_800),
    (12_345, 1_200, 1_481),  # 1481.4 rounds down
    (12_350, 1_000, 1_235),
    (5, 1_000, 1),  # 0.5 rounds half up
    (1, 800, 0),
    (1, 1_200, 0),
])
def test_split_commission(gross, rate_bps, commission):
    split = split_commission(gross, rate_bps)
    assert split.commission == commission
    assert split.payout == gross - commission
    assert split.commission + split.payout == gross


def test_split_commission_rejects_non_positive_gross():
    with pytest.raises(InvalidAmount):
        split_commission(0, 1_200)


@pytest.mark.asyncio
async def test_duplicate_commission_changes_nothing(async_session, make_user, make_provider):
    customer = await make_user()
    provider = await make_provider()
    booking = await _completed_booking(async_session, customer, provider, 15_000)

    with pytest.raises(DuplicateCommission):
        await post_completion(async_session, booking.id, 15_000, provider.id)

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 13_200


@pytest.mark.asyncio
async def test_commission_requires_completed_booking(async_session, make_user, make_provider):
    """An open booking earns nothing until it is completed"""
    customer = await make_user()
    provider = await make_provider()
    booking = await create_booking(
        async_session, customer.id, provider.id, utcnow().date() + timedelta(days=1), "5 Castle Road", "Accra"
    )
    booking_id = booking.id

    with pytest.raises(IllegalTransition):
        await post_completion(async_session, booking_id, 15_000, provider.id)

    assert await get_commission_record(async_session, booking_id) is None
    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 0

    await confirm_booking(async_session, booking_id)
    await start_booking(async_session, booking_id)
    await complete_booking(async_session, booking_id, gross_amount=15_000)
    record = await get_commission_record(async_session, booking_id)
    assert record.commission_amount == 1_800


@pytest.mark.asyncio
async def test_commission_for_unknown_booking(async_session, make_provider):
    provider = await make_provider()
    with pytest.raises(NotFound):
        await post_completion(async_session, 424242, 15_000, provider.id)

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 0


@pytest.mark.asyncio
async def test_commission_credits_only_the_booking_provider(async_session, make_user, make_provider):
    customer = await make_user()
    provider = await make_provider()
    other = await make_provider()
    booking = await create_booking(
        async_session, customer.id, provider.id, utcnow().date() + timedelta(days=1), "5 Castle Road", "Accra"
    )
    booking_id = booking.id
    # Completed without a commission so only the provider check can refuse
    await async_session.execute(
        update(Booking).where(Booking.id == booking_id).values(status=BookingStatus.COMPLETED.value)
    )
    await async_session.commit()

    with pytest.raises(Forbidden):
        await post_completion(async_session, booking_id, 15_000, other.id)

    assert await get_commission_record(async_session, booking_id) is None
    balance = await get_provider_balance(async_session, other.id)
    assert balance.available == 0


@pytest.mark.asyncio
async def test_payouts_accumulate(async_session, make_user, make_provider):
    customer = await make_user()
    provider = await make_provider()
    await _completed_booking(async_session, customer, provider, 15_000)
    await _completed_booking(async_session, customer, provider, 10_000)

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 13_200 + 8_800


@pytest.mark.asyncio
async def test_withdraw_more_than_available(async_session, make_provider):
    """GH₵100 available, GH₵150 requested: refused, balance untouched"""
    provider = await make_provider()
    await _fund(async_session, provider.id, 10_000)

    with pytest.raises(InsufficientBalance):
        await withdraw(async_session, provider.id, 15_000, "MTN", "0241234567")

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 10_000
    assert balance.pending == 0

    withdrawals = await async_session.execute(select(Withdrawal))
    assert withdrawals.scalars().all() == []


@pytest.mark.asyncio
async def test_withdraw_without_balance_row(async_session, make_provider):
    provider = await make_provider()
    with pytest.raises(InsufficientBalance):
        await withdraw(async_session, provider.id, 1_000, "MTN", "0241234567")


@pytest.mark.asyncio
async def test_withdraw_moves_funds_to_pending(async_session, make_provider):
    provider = await make_provider()
    await _fund(async_session, provider.id, 20_000)

    withdrawal = await withdraw(
        async_session, provider.id, 15_000, "VODAFONE", "0201234567", account_name="Kofi Mensah"
    )

    assert withdrawal.status == WithdrawalStatus.PENDING.value
    assert withdrawal.reference.startswith("PAYOUT-")
    assert withdrawal.method == "VODAFONE"

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 5_000
    assert balance.pending == 15_000


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [999, 500_001])
async def test_withdraw_bounds(async_session, make_provider, amount):
    provider = await make_provider()
    await _fund(async_session, provider.id, 1_000_000)

    with pytest.raises(InvalidAmount):
        await withdraw(async_session, provider.id, amount, "BANK", "1234567890123")

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 1_000_000


@pytest.mark.asyncio
async def test_withdraw_rejects_unknown_method(async_session, make_provider):
    provider = await make_provider()
    await _fund(async_session, provider.id, 10_000)

    with pytest.raises(ValueError):
        await withdraw(async_session, provider.id, 5_000, "PAYPAL", "someone@example.com")


@pytest.mark.asyncio
async def test_settle_withdrawal(async_session, make_provider):
    provider = await make_provider()
    await _fund(async_session, provider.id, 30_000)

    paid = await withdraw(async_session, provider.id, 10_000, "MTN", "0241234567")
    failed = await withdraw(async_session, provider.id, 5_000, "AIRTELTIGO", "0271234567")

    paid = await settle_withdrawal(async_session, paid.id, succeeded=True)
    assert paid.status == WithdrawalStatus.COMPLETED.value
    assert paid.settled_at is not None

    failed = await settle_withdrawal(async_session, failed.id, succeeded=False)
    assert failed.status == WithdrawalStatus.FAILED.value

    balance = await get_provider_balance(async_session, provider.id)
    assert balance.available == 20_000
    assert balance.pending == 0

    with pytest.raises(IllegalTransition):
        await settle_withdrawal(async_session, paid.id, succeeded=False)
    with pytest.raises(NotFound):
        await settle_withdrawal(async_session, 777, succeeded=True)


@pytest.mark.asyncio
async def test_provider_earnings(async_session, make_user, make_provider):
    customer = await make_user()
    provider = await make_provider()
    await _completed_booking(async_session, customer, provider, 15_000)
    await _completed_booking(async_session, customer, provider, 10_000)

    withdrawal = await withdraw(async_session, provider.id, 5_000, "MTN", "0241234567")
    await settle_withdrawal(async_session, withdrawal.id, succeeded=True)

    earnings = await get_provider_earnings(async_session, provider.id)
    assert earnings.total_payouts == 22_000
    assert earnings.total_commissions == 3_000
    assert earnings.completed_bookings == 2
    assert earnings.available == 17_000
    assert earnings.pending == 0
    assert earnings.withdrawn == 5_000
    assert len(earnings.recent) == 2


@pytest.mark.asyncio
async def test_platform_revenue(async_session, make_user, make_provider):
    customer = await make_user()
    free_provider = await make_provider()
    premium_provider = await make_provider(tier="PREMIUM")
    await apply_subscription(async_session, customer.id, "BASIC", "PAY-REV-1", amount_paid=5_000)

    await _completed_booking(async_session, customer, free_provider, 15_000)
    await _completed_booking(async_session, customer, premium_provider, 10_000)

    revenue = await get_platform_revenue(async_session)
    assert revenue.commission_revenue == 1_800 + 800
    assert revenue.subscription_revenue == 5_000
    assert revenue.booking_volume == 25_000
    assert revenue.total_bookings == 2
    assert revenue.users_by_tier == {"FREE": 1, "PREMIUM": 1}


@pytest.mark.asyncio
async def test_list_withdrawals_newest_first(async_session, make_provider):
    provider = await make_provider()
    other = await make_provider()
    await _fund(async_session, provider.id, 20_000)
    await _fund(async_session, other.id, 20_000)

    first = await withdraw(async_session, provider.id, 1_000, "MTN", "0241234567")
    second = await withdraw(async_session, provider.id, 2_000, "MTN", "0241234567")
    await withdraw(async_session, other.id, 3_000, "MTN", "0201234567")

    withdrawals = await list_withdrawals(async_session, provider.id)
    assert [w.id for w in withdrawals] == [second.id, first.id]
    assert await list_withdrawals(async_session, 424242) == []
