"""
Entitlement ledger - gates contact reveals behind subscription allowance.

The user's tier, expiry and free-contacts-remaining counter are owned by
this module; nothing else writes them. The unlock check-then-decrement is
serialized per user three ways: an in-process keyed lock, a row lock on the
user (PostgreSQL), and a compare-and-swap UPDATE guarded by the unique
(user, target) constraint.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List, NamedTuple
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from directrent.database.models import User, ContactUnlock, SubscriptionPayment, TargetKind
from directrent.errors import EntitlementExhausted, DuplicatePayment, InvalidAmount, NotFound
from directrent.services.tier_catalog import SubscriptionTier, get_tier, FREE_TIER, FREE_REFRESH_DAYS
from directrent.utils.clock import utcnow, as_utc
from directrent.utils.locks import KeyedLock

_user_locks = KeyedLock()


class Allowance(NamedTuple):
    allowed: bool
    remaining: Optional[int]  # None = unlimited
    unlimited: bool


class UnlockResult(NamedTuple):
    already_unlocked: bool
    remaining_after: Optional[int]  # None = unlimited
    unlimited: bool


class SubscriptionResult(NamedTuple):
    tier: str
    expires_at: Optional[datetime]
    remaining: Optional[int]
    applied: bool  # False when the payment reference was already applied


class EntitlementStatus(NamedTuple):
    user_id: int
    tier: str
    remaining: Optional[int]
    unlimited: bool
    expires_at: Optional[datetime]


async def _get_user(session: AsyncSession, user_id: int, for_update: bool = False) -> User:
    stmt = select(User).where(User.id == user_id, User.is_active == True)
    if for_update:
        # Row-level lock; populate_existing so we never act on a stale identity-map copy
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound(f"User {user_id} not found", user_id=user_id)
    return user


def _is_expired(user: User, now: datetime) -> bool:
    expires_at = as_utc(user.subscription_expires_at)
    return (
        user.subscription_tier != FREE_TIER
        and expires_at is not None
        and expires_at <= now
    )


def effective_tier(user: User, now: Optional[datetime] = None) -> SubscriptionTier:
    """The tier that currently applies: an expired paid tier counts as FREE."""
    if _is_expired(user, now or utcnow()):
        return get_tier(FREE_TIER)
    return get_tier(user.subscription_tier)


def _effective_view(user: User, now: datetime) -> tuple:
    """(tier, remaining) as they will be once any pending expiry is applied."""
    if _is_expired(user, now):
        return get_tier(FREE_TIER), get_tier(FREE_TIER).contacts
    tier = get_tier(user.subscription_tier)
    return tier, (None if tier.unlimited else user.free_contacts_remaining)


def _downgrade_to_free(user: User, now: datetime) -> None:
    free = get_tier(FREE_TIER)
    logging.info(f"Subscription {user.subscription_tier} of user {user.id} expired, downgrading to {FREE_TIER}")
    user.subscription_tier = FREE_TIER
    user.subscription_expires_at = None
    user.free_contacts_remaining = free.contacts
    user.free_contacts_reset_at = now


async def check_allowance(session: AsyncSession, user_id: int) -> Allowance:
    """May this user unlock one more contact? Pure read."""
    user = await _get_user(session, user_id)
    tier, remaining = _effective_view(user, utcnow())
    if tier.unlimited:
        return Allowance(allowed=True, remaining=None, unlimited=True)
    return Allowance(allowed=remaining > 0, remaining=remaining, unlimited=False)


async def get_entitlement_status(session: AsyncSession, user_id: int) -> EntitlementStatus:
    user = await _get_user(session, user_id)
    now = utcnow()
    tier, remaining = _effective_view(user, now)
    return EntitlementStatus(
        user_id=user.id,
        tier=tier.code,
        remaining=remaining,
        unlimited=tier.unlimited,
        expires_at=None if _is_expired(user, now) else as_utc(user.subscription_expires_at),
    )


async def _find_unlock(session: AsyncSession, user_id: int, target_id: str) -> Optional[ContactUnlock]:
    stmt = select(ContactUnlock).where(
        ContactUnlock.user_id == user_id,
        ContactUnlock.target_id == target_id
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def unlock_contact(
    session: AsyncSession,
    user_id: int,
    target_id: str,
    target_kind: TargetKind = TargetKind.property
) -> UnlockResult:
    """
    Reveal a contact to a user, consuming one allowance unit.

    Idempotent on (user_id, target_id): a repeat returns already_unlocked=True
    and leaves the counter alone. Raises EntitlementExhausted with no record
    created and no decrement when the allowance is used up.

    Algorithm:
    1. Take the per-user lock and lock the user row
    2. Existing unlock for the target -> already_unlocked
    3. Apply a pending expiry (expired paid tier -> FREE)
    4. Unlimited tier -> record without decrement
    5. Otherwise CAS-decrement (remaining > 0) and record, in one transaction
    """
    target_id = str(target_id)

    async with _user_locks.hold(user_id):
        try:
            user = await _get_user(session, user_id, for_update=True)

            existing = await _find_unlock(session, user_id, target_id)
            if existing:
                tier, remaining = _effective_view(user, utcnow())
                await session.commit()
                return UnlockResult(already_unlocked=True, remaining_after=remaining, unlimited=tier.unlimited)

            now = utcnow()
            if _is_expired(user, now):
                _downgrade_to_free(user, now)
                await session.flush()

            tier = get_tier(user.subscription_tier)

            if not tier.unlimited:
                if user.free_contacts_remaining <= 0:
                    raise EntitlementExhausted(
                        f"User {user_id} has no contacts remaining on {tier.code}",
                        tier=tier.code
                    )
                # Compare-and-swap: only decrements while the stored value is still positive
                result = await session.execute(
                    update(User)
                    .where(User.id == user_id, User.free_contacts_remaining > 0)
                    .values(free_contacts_remaining=User.free_contacts_remaining - 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise EntitlementExhausted(
                        f"User {user_id} has no contacts remaining on {tier.code}",
                        tier=tier.code
                    )

            session.add(ContactUnlock(
                user_id=user_id,
                target_id=target_id,
                target_kind=TargetKind(target_kind).value
            ))
            await session.flush()
            await session.refresh(user)
            remaining = None if tier.unlimited else user.free_contacts_remaining
            await session.commit()

        except IntegrityError:
            # Another process recorded the same (user, target) first
            await session.rollback()
            logging.info(f"Concurrent unlock of {target_id} by user {user_id} lost the race, reporting already unlocked")
            user = await _get_user(session, user_id)
            tier, remaining = _effective_view(user, utcnow())
            return UnlockResult(already_unlocked=True, remaining_after=remaining, unlimited=tier.unlimited)
        except EntitlementExhausted:
            await session.rollback()
            logging.warning(f"Unlock of {target_id} refused for user {user_id}: allowance exhausted")
            raise
        except Exception:
            await session.rollback()
            raise

    logging.info(f"User {user_id} unlocked {target_id} ({tier.code}), remaining: {'unlimited' if remaining is None else remaining}")
    return UnlockResult(already_unlocked=False, remaining_after=remaining, unlimited=tier.unlimited)


async def _record_payment(
    session: AsyncSession,
    user_id: int,
    tier_code: str,
    payment_reference: str,
    amount_paid: Optional[int]
) -> SubscriptionPayment:
    stmt = select(SubscriptionPayment).where(SubscriptionPayment.payment_reference == payment_reference)
    result = await session.execute(stmt)
    existing = result.scalar_one_or_none()
    if existing:
        raise DuplicatePayment(
            f"Payment {payment_reference} already applied",
            user_id=existing.user_id,
            tier=existing.tier_code
        )

    payment = SubscriptionPayment(
        payment_reference=payment_reference,
        user_id=user_id,
        tier_code=tier_code,
        amount_paid=amount_paid
    )
    session.add(payment)
    try:
        await session.flush()
    except IntegrityError as e:
        raise DuplicatePayment(f"Payment {payment_reference} already applied") from e
    return payment


async def apply_subscription(
    session: AsyncSession,
    user_id: int,
    tier_code: str,
    payment_reference: str,
    amount_paid: Optional[int] = None
) -> SubscriptionResult:
    """
    Activate a tier after the gateway confirms payment.

    The allowance is replaced (not topped up) by the tier's full allowance and
    expiry becomes now + tier duration. Replaying a payment_reference changes
    nothing and returns the current state with applied=False.

    Raises:
        UnknownTier: tier_code is not in the catalog
        InvalidAmount: amount_paid is below the tier price
    """
    tier = get_tier(tier_code)

    async with _user_locks.hold(user_id):
        try:
            user = await _get_user(session, user_id, for_update=True)
            # A replay is a no-op whatever amount it carries
            await _record_payment(session, user_id, tier.code, payment_reference, amount_paid)
            if amount_paid is not None and amount_paid < tier.price:
                raise InvalidAmount(
                    f"Payment {payment_reference} of {amount_paid} is below the {tier.code} price {tier.price}",
                    amount_paid=amount_paid,
                    price=tier.price
                )

            now = utcnow()
            user.subscription_tier = tier.code
            user.free_contacts_remaining = 0 if tier.unlimited else tier.contacts
            user.subscription_expires_at = now + timedelta(days=tier.duration_days)
            user.free_contacts_reset_at = now
            await session.commit()

        except DuplicatePayment as e:
            await session.rollback()
            if e.details.get("user_id") not in (None, user_id):
                logging.warning(f"Payment {payment_reference} replayed for user {user_id} but belongs to user {e.details['user_id']}")
            else:
                logging.info(f"Payment {payment_reference} already applied, ignoring replay")
            user = await _get_user(session, user_id)
            current = get_tier(user.subscription_tier)
            return SubscriptionResult(
                tier=user.subscription_tier,
                expires_at=as_utc(user.subscription_expires_at),
                remaining=None if current.unlimited else user.free_contacts_remaining,
                applied=False
            )
        except Exception:
            await session.rollback()
            raise

    logging.info(f"User {user_id} subscribed to {tier.code} until {user.subscription_expires_at} (payment {payment_reference})")
    return SubscriptionResult(
        tier=tier.code,
        expires_at=as_utc(user.subscription_expires_at),
        remaining=None if tier.unlimited else user.free_contacts_remaining,
        applied=True
    )


async def _expiry_candidates(session: AsyncSession, now: datetime) -> List[int]:
    stmt = select(User.id).where(
        User.subscription_tier != FREE_TIER,
        User.subscription_expires_at.is_not(None),
        User.subscription_expires_at <= now
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def expire_subscriptions(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Downgrade users whose paid tier has expired back to FREE.

    Each downgrade re-checks expiry in its WHERE clause, so a user who renewed
    after the candidate list was read is left alone. Per-user failures are
    logged and picked up again by the next sweep.

    Returns:
        Number of users downgraded
    """
    now = now or utcnow()
    free = get_tier(FREE_TIER)

    candidates = await _expiry_candidates(session, now)

    downgraded = 0
    for user_id in candidates:
        try:
            result = await session.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.subscription_tier != FREE_TIER,
                    User.subscription_expires_at <= now
                )
                .values(
                    subscription_tier=FREE_TIER,
                    subscription_expires_at=None,
                    free_contacts_remaining=free.contacts,
                    free_contacts_reset_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount:
                downgraded += 1
                logging.info(f"Expired subscription of user {user_id}")
            else:
                logging.info(f"User {user_id} renewed during sweep, skipping")
        except Exception as e:
            await session.rollback()
            logging.error(f"Failed to expire subscription for user {user_id}: {e}")

    return downgraded


async def refresh_free_allowances(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Start a new monthly cycle for FREE users whose last refresh is 30+ days old."""
    now = now or utcnow()
    free = get_tier(FREE_TIER)
    cutoff = now - timedelta(days=FREE_REFRESH_DAYS)

    result = await session.execute(
        update(User)
        .where(
            User.subscription_tier == FREE_TIER,
            or_(User.free_contacts_reset_at.is_(None), User.free_contacts_reset_at <= cutoff)
        )
        .values(free_contacts_remaining=free.contacts, free_contacts_reset_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logging.info(f"Refreshed FREE allowance for {result.rowcount} users")
    return result.rowcount


async def list_unlocked_contacts(session: AsyncSession, user_id: int) -> List[ContactUnlock]:
    """All contacts a user has unlocked, newest first"""
    stmt = (
        select(ContactUnlock)
        .where(ContactUnlock.user_id == user_id)
        .order_by(ContactUnlock.unlocked_at.desc(), ContactUnlock.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def is_unlocked(session: AsyncSession, user_id: int, target_id: str) -> bool:
    return await _find_unlock(session, user_id, str(target_id)) is not None
