import asyncio
import pytest
from datetime import timedelta
from sqlalchemy import select, func, update

from directrent.cron import expiry_sweep_job
from directrent.database.models import ContactUnlock, SubscriptionPayment, User, TargetKind
from directrent.errors import EntitlementExhausted, InvalidAmount, NotFound, UnknownTier
from directrent.services import entitlement_service
from directrent.services.entitlement_service import (
    apply_subscription, check_allowance, expire_subscriptions, get_entitlement_status,
    is_unlocked, list_unlocked_contacts, refresh_free_allowances, unlock_contact
)
from directrent.utils.clock import utcnow, as_utc


async def _count_unlocks(session, user_id):
    result = await session.execute(
        select(func.count(ContactUnlock.id)).where(ContactUnlock.user_id == user_id)
    )
    return result.scalar()


@pytest.mark.asyncio
async def test_free_user_exhausts_allowance(async_session, make_user):
    """FREE user: 3 unlocks, a repeat is free, the 4th distinct target is refused"""
    user = await make_user()

    first = await unlock_contact(async_session, user.id, "prop-A")
    assert first.already_unlocked is False
    assert first.remaining_after == 2

    repeat = await unlock_contact(async_session, user.id, "prop-A")
    assert repeat.already_unlocked is True
    assert repeat.remaining_after == 2

    await unlock_contact(async_session, user.id, "prop-B")
    last = await unlock_contact(async_session, user.id, "prop-C")
    assert last.remaining_after == 0

    with pytest.raises(EntitlementExhausted):
        await unlock_contact(async_session, user.id, "prop-D")

    assert await _count_unlocks(async_session, user.id) == 3
    assert await is_unlocked(async_session, user.id, "prop-D") is False

    status = await get_entitlement_status(async_session, user.id)
    assert status.tier == "FREE"
    assert status.remaining == 0

    allowance = await check_allowance(async_session, user.id)
    assert allowance.allowed is False


@pytest.mark.asyncio
async def test_unlimited_tier_never_decrements(async_session, make_user):
    user = await make_user(tier="SUPERUSER", remaining=0, expires_at=utcnow() + timedelta(days=30))

    for i in range(5):
        result = await unlock_contact(async_session, user.id, f"prop-{i}")
        assert result.unlimited is True
        assert result.remaining_after is None

    status = await get_entitlement_status(async_session, user.id)
    assert status.unlimited is True
    assert status.remaining is None
    assert await _count_unlocks(async_session, user.id) == 5


@pytest.mark.asyncio
async def test_expired_tier_is_treated_as_free(async_session, make_user):
    user = await make_user(tier="BASIC", remaining=10, expires_at=utcnow() - timedelta(hours=1))

    status = await get_entitlement_status(async_session, user.id)
    assert status.tier == "FREE"
    assert status.remaining == 3
    assert status.expires_at is None

    result = await unlock_contact(async_session, user.id, "prop-A")
    assert result.remaining_after == 2

    refreshed = await async_session.get(User, user.id, populate_existing=True)
    assert refreshed.subscription_tier == "FREE"
    assert refreshed.subscription_expires_at is None


@pytest.mark.asyncio
async def test_provider_unlock_kind_is_recorded(async_session, make_user):
    user = await make_user()
    await unlock_contact(async_session, user.id, "42", TargetKind.provider)
    await unlock_contact(async_session, user.id, "prop-9")

    unlocks = await list_unlocked_contacts(async_session, user.id)
    assert [u.target_id for u in unlocks] == ["prop-9", "42"]
    assert unlocks[1].target_kind == TargetKind.provider.value


@pytest.mark.asyncio
async def test_unknown_or_inactive_user(async_session, make_user):
    inactive = await make_user(is_active=False)

    with pytest.raises(NotFound):
        await unlock_contact(async_session, 9999, "prop-A")
    with pytest.raises(NotFound):
        await unlock_contact(async_session, inactive.id, "prop-A")


@pytest.mark.asyncio
async def test_apply_subscription_replaces_allowance(async_session, make_user):
    user = await make_user(remaining=0)
    before = utcnow()

    result = await apply_subscription(async_session, user.id, "BASIC", "PAY-001", amount_paid=5_000)

    assert result.applied is True
    assert result.tier == "BASIC"
    assert result.remaining == 15
    assert result.expires_at >= before + timedelta(days=30)

    unlock = await unlock_contact(async_session, user.id, "prop-A")
    assert unlock.remaining_after == 14


@pytest.mark.asyncio
async def test_payment_replay_is_a_no_op(async_session, make_user):
    user = await make_user()
    await apply_subscription(async_session, user.id, "RELAX", "PAY-RELAX-1")
    await unlock_contact(async_session, user.id, "prop-A")

    replay = await apply_subscription(async_session, user.id, "RELAX", "PAY-RELAX-1")

    assert replay.applied is False
    assert replay.tier == "RELAX"
    # Allowance was not reset by the replay
    assert replay.remaining == 39

    payments = await async_session.execute(select(func.count(SubscriptionPayment.id)))
    assert payments.scalar() == 1


@pytest.mark.asyncio
async def test_apply_superuser_reports_unlimited(async_session, make_user):
    user = await make_user()
    result = await apply_subscription(async_session, user.id, "SUPERUSER", "PAY-SU-1")
    assert result.remaining is None

    status = await get_entitlement_status(async_session, user.id)
    assert status.unlimited is True


@pytest.mark.asyncio
async def test_apply_subscription_rejects_bad_input(async_session, make_user):
    user = await make_user()

    with pytest.raises(UnknownTier):
        await apply_subscription(async_session, user.id, "GOLD", "PAY-X")
    with pytest.raises(InvalidAmount):
        await apply_subscription(async_session, user.id, "BASIC", "PAY-Y", amount_paid=4_999)

    status = await get_entitlement_status(async_session, user.id)
    assert status.tier == "FREE"
    assert status.remaining == 3


@pytest.mark.asyncio
async def test_expire_subscriptions(async_session, make_user):
    now = utcnow()
    lapsed = await make_user(tier="BASIC", remaining=7, expires_at=now - timedelta(minutes=5))
    active = await make_user(tier="RELAX", remaining=20, expires_at=now + timedelta(days=3))
    free = await make_user(remaining=1)

    downgraded = await expire_subscriptions(async_session, now=now)
    assert downgraded == 1

    lapsed = await async_session.get(User, lapsed.id, populate_existing=True)
    assert lapsed.subscription_tier == "FREE"
    assert lapsed.free_contacts_remaining == 3
    assert lapsed.subscription_expires_at is None

    active = await async_session.get(User, active.id, populate_existing=True)
    assert active.subscription_tier == "RELAX"
    assert active.free_contacts_remaining == 20

    free = await async_session.get(User, free.id, populate_existing=True)
    assert free.free_contacts_remaining == 1


@pytest.mark.asyncio
async def test_expire_skips_users_not_yet_due(async_session, make_user):
    """A subscription renewed past the sweep time is left alone"""
    now = utcnow()
    user = await make_user(tier="BASIC", remaining=15, expires_at=now + timedelta(days=30))

    assert await expire_subscriptions(async_session, now=now) == 0
    user = await async_session.get(User, user.id, populate_existing=True)
    assert user.subscription_tier == "BASIC"
    assert as_utc(user.subscription_expires_at) > now


@pytest.mark.asyncio
async def test_refresh_free_allowances(async_session, make_user):
    now = utcnow()
    due = await make_user(remaining=0, reset_at=now - timedelta(days=31))
    recent = await make_user(remaining=1, reset_at=now - timedelta(days=5))
    paid = await make_user(tier="BASIC", remaining=2, expires_at=now + timedelta(days=2), reset_at=now - timedelta(days=40))

    assert await refresh_free_allowances(async_session, now=now) == 1

    due = await async_session.get(User, due.id, populate_existing=True)
    recent = await async_session.get(User, recent.id, populate_existing=True)
    paid = await async_session.get(User, paid.id, populate_existing=True)
    assert due.free_contacts_remaining == 3
    assert recent.free_contacts_remaining == 1
    assert paid.free_contacts_remaining == 2


@pytest.mark.asyncio
async def test_concurrent_unlock_same_target_last_contact(session_factory, make_user):
    """Two sessions race for the same target with one contact left: one unlock, one no-op"""
    user = await make_user(remaining=1)

    async with session_factory() as s1, session_factory() as s2:
        results = await asyncio.gather(
            unlock_contact(s1, user.id, "prop-A"),
            unlock_contact(s2, user.id, "prop-A"),
        )

    assert sorted(r.already_unlocked for r in results) == [False, True]

    async with session_factory() as session:
        status = await get_entitlement_status(session, user.id)
        assert status.remaining == 0
        assert await _count_unlocks(session, user.id) == 1


@pytest.mark.asyncio
async def test_concurrent_unlock_different_targets_last_contact(session_factory, make_user):
    user = await make_user(remaining=1)

    async with session_factory() as s1, session_factory() as s2:
        results = await asyncio.gather(
            unlock_contact(s1, user.id, "prop-A"),
            unlock_contact(s2, user.id, "prop-B"),
            return_exceptions=True
        )

    refused = [r for r in results if isinstance(r, EntitlementExhausted)]
    granted = [r for r in results if not isinstance(r, Exception)]
    assert len(refused) == 1
    assert len(granted) == 1
    assert granted[0].remaining_after == 0

    async with session_factory() as session:
        assert await _count_unlocks(session, user.id) == 1


@pytest.mark.asyncio
async def test_expiry_sweep_job(session_factory, make_user):
    now = utcnow()
    await make_user(tier="RELAX", remaining=4, expires_at=now - timedelta(days=1))
    await make_user(remaining=0, reset_at=now - timedelta(days=30, minutes=1))
    await make_user(remaining=2)

    assert await expiry_sweep_job(session_factory) == (1, 1)
    # Nothing left to do on the next run
    assert await expiry_sweep_job(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_expired_unlimited_repeat_unlock_reports_free(async_session, make_user):
    """A lapsed SUPERUSER re-opening a contact sees the FREE allowance, not unlimited"""
    user = await make_user(tier="SUPERUSER", remaining=0, expires_at=utcnow() - timedelta(hours=1))
    async_session.add(ContactUnlock(user_id=user.id, target_id="prop-A", target_kind=TargetKind.property.value))
    await async_session.commit()

    result = await unlock_contact(async_session, user.id, "prop-A")

    assert result.already_unlocked is True
    assert result.unlimited is False
    assert result.remaining_after == 3
    assert await _count_unlocks(async_session, user.id) == 1


@pytest.mark.asyncio
async def test_replay_with_lower_amount_is_a_no_op(async_session, make_user):
    user = await make_user()
    await apply_subscription(async_session, user.id, "BASIC", "PAY-BASIC-9", amount_paid=5_000)

    replay = await apply_subscription(async_session, user.id, "BASIC", "PAY-BASIC-9", amount_paid=10)

    assert replay.applied is False
    assert replay.tier == "BASIC"
    assert replay.remaining == 15

    payments = await async_session.execute(select(SubscriptionPayment))
    assert [p.amount_paid for p in payments.scalars().all()] == [5_000]


@pytest.mark.asyncio
async def test_expire_leaves_user_renewed_mid_sweep(async_session, make_user, monkeypatch):
    """Renewal lands between the candidate read and the downgrade"""
    now = utcnow()
    user = await make_user(tier="BASIC", remaining=2, expires_at=now - timedelta(minutes=1))
    renewed_until = now + timedelta(days=30)
    read_candidates = entitlement_service._expiry_candidates

    async def candidates_then_renew(session, when):
        candidates = await read_candidates(session, when)
        assert candidates == [user.id]
        await session.execute(
            update(User)
            .where(User.id == user.id)
            .values(subscription_tier="RELAX", subscription_expires_at=renewed_until, free_contacts_remaining=40)
        )
        await session.commit()
        return candidates

    monkeypatch.setattr(entitlement_service, "_expiry_candidates", candidates_then_renew)

    assert await expire_subscriptions(async_session, now=now) == 0

    user = await async_session.get(User, user.id, populate_existing=True)
    assert user.subscription_tier == "RELAX"
    assert user.free_contacts_remaining == 40
    assert as_utc(user.subscription_expires_at) > now
