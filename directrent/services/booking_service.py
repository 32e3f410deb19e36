"""
Booking state machine.

    PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED
    PENDING/CONFIRMED -> CANCELLED

COMPLETED and CANCELLED are terminal. Every transition is a compare-and-swap
on the current status, so of two concurrent calls at most one wins.
Completion posts the commission in the same transaction as the status change.
"""
import logging
from datetime import date
from typing import Optional, List, Dict, FrozenSet
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from directrent.database.models import Booking, BookingStatus, User, UserRole, ProviderProfile
from directrent.errors import (
    IllegalTransition, ConcurrentModification, AlreadyReviewed, InvalidRating,
    InvalidBooking, InvalidAmount, NotFound, Forbidden
)
from directrent.services.commission_service import record_commission
from directrent.utils.clock import utcnow

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Transitions only the provider may trigger; cancel is open to both parties
PROVIDER_ONLY = frozenset({BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED})

MIN_RATING = 1
MAX_RATING = 5


def can_transition(current: BookingStatus, new: BookingStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[BookingStatus(current)]


async def get_booking(session: AsyncSession, booking_id: int, refresh: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound(f"Booking {booking_id} not found", booking_id=booking_id)
    return booking


async def _get_valid_provider(session: AsyncSession, provider_id: int) -> ProviderProfile:
    stmt = (
        select(ProviderProfile)
        .join(User, User.id == ProviderProfile.user_id)
        .where(
            ProviderProfile.user_id == provider_id,
            ProviderProfile.is_active == True,
            User.is_active == True,
            User.role == UserRole.SERVICE_PROVIDER.value
        )
    )
    result = await session.execute(stmt)
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFound(f"Provider {provider_id} not found", provider_id=provider_id)
    return profile


async def create_booking(
    session: AsyncSession,
    customer_id: int,
    provider_id: int,
    scheduled_date: date,
    address: str,
    city: str,
    scheduled_time: Optional[str] = None,
    notes: Optional[str] = None,
    quoted_amount: Optional[int] = None,
    service_type: Optional[str] = None,
    today: Optional[date] = None
) -> Booking:
    """
    Create a PENDING booking.

    Preconditions: the provider is an active SERVICE_PROVIDER with an active
    profile, scheduled_date is today or later, address and city are non-empty.
    """
    today = today or utcnow().date()
    address = (address or "").strip()
    city = (city or "").strip()

    if not address or not city:
        raise InvalidBooking("Address and city are required")
    if scheduled_date < today:
        raise InvalidBooking(f"Scheduled date {scheduled_date} is in the past", scheduled_date=str(scheduled_date))
    if customer_id == provider_id:
        raise InvalidBooking("Providers cannot book themselves")
    if quoted_amount is not None and quoted_amount <= 0:
        raise InvalidAmount(f"Quoted amount must be positive, got {quoted_amount}")

    try:
        customer = await session.get(User, customer_id)
        if not customer or not customer.is_active:
            raise NotFound(f"Customer {customer_id} not found", customer_id=customer_id)
        profile = await _get_valid_provider(session, provider_id)

        booking = Booking(
            customer_id=customer_id,
            provider_id=provider_id,
            service_type=service_type or profile.service_type,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            address=address,
            city=city,
            notes=notes,
            quoted_amount=quoted_amount,
            status=BookingStatus.PENDING.value
        )
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
    except Exception:
        await session.rollback()
        raise

    logging.info(f"Booking {booking.id} created: customer {customer_id} -> provider {provider_id} on {scheduled_date}")
    return booking


def _check_actor(booking: Booking, new_status: BookingStatus, actor_id: Optional[int]) -> None:
    if actor_id is None:
        return
    if new_status in PROVIDER_ONLY:
        if actor_id != booking.provider_id:
            raise Forbidden(f"Only the provider can move booking {booking.id} to {new_status.value}")
    elif actor_id not in (booking.provider_id, booking.customer_id):
        raise Forbidden(f"User {actor_id} is not a party to booking {booking.id}")


async def _swap_status(
    session: AsyncSession,
    booking: Booking,
    new_status: BookingStatus,
    **values
) -> None:
    """Compare-and-swap booking.status to new_status. Does not commit."""
    current = BookingStatus(booking.status)
    if not can_transition(current, new_status):
        raise IllegalTransition(
            f"Booking {booking.id} cannot go from {current.value} to {new_status.value}",
            current=current.value,
            requested=new_status.value
        )

    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == current.value)
        .values(status=new_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    # Lost the race: report against whatever the status is now
    fresh = await get_booking(session, booking.id, refresh=True)
    if not can_transition(BookingStatus(fresh.status), new_status):
        raise IllegalTransition(
            f"Booking {booking.id} cannot go from {fresh.status} to {new_status.value}",
            current=fresh.status,
            requested=new_status.value
        )
    raise ConcurrentModification(f"Booking {booking.id} changed concurrently, retry", current=fresh.status)


async def transition_booking(
    session: AsyncSession,
    booking_id: int,
    new_status: BookingStatus,
    actor_id: Optional[int] = None,
    gross_amount: Optional[int] = None
) -> Booking:
    """
    Move a booking to new_status if the transition table allows it.

    COMPLETED also posts the commission for gross_amount (or the booking's
    quoted amount) atomically with the status change.

    Raises:
        IllegalTransition: the move is not in the table; state is unchanged
        ConcurrentModification: another call changed the status first
        InvalidAmount: completing with no gross amount available
    """
    new_status = BookingStatus(new_status)

    try:
        booking = await get_booking(session, booking_id, refresh=True)
        _check_actor(booking, new_status, actor_id)

        now = utcnow()
        values = {}
        gross = None
        if new_status == BookingStatus.COMPLETED:
            gross = gross_amount if gross_amount is not None else booking.quoted_amount
            if gross is None or gross <= 0:
                raise InvalidAmount(f"Booking {booking_id} needs a positive gross amount to complete")
            values["completed_at"] = now
        elif new_status == BookingStatus.CANCELLED:
            values["cancelled_at"] = now
            values["cancelled_by"] = actor_id

        await _swap_status(session, booking, new_status, **values)

        if new_status == BookingStatus.COMPLETED:
            await record_commission(session, booking.id, gross, booking.provider_id)

        await session.commit()
        booking = await get_booking(session, booking_id, refresh=True)
    except (IllegalTransition, ConcurrentModification) as e:
        await session.rollback()
        logging.warning(f"Booking {booking_id} transition to {new_status.value} rejected: {e}")
        raise
    except Exception:
        await session.rollback()
        raise

    logging.info(f"Booking {booking_id} -> {new_status.value}")
    return booking


async def confirm_booking(session: AsyncSession, booking_id: int, actor_id: Optional[int] = None) -> Booking:
    return await transition_booking(session, booking_id, BookingStatus.CONFIRMED, actor_id=actor_id)


async def start_booking(session: AsyncSession, booking_id: int, actor_id: Optional[int] = None) -> Booking:
    return await transition_booking(session, booking_id, BookingStatus.IN_PROGRESS, actor_id=actor_id)


async def cancel_booking(session: AsyncSession, booking_id: int, actor_id: Optional[int] = None) -> Booking:
    """Cancel before work starts. No commission is charged."""
    return await transition_booking(session, booking_id, BookingStatus.CANCELLED, actor_id=actor_id)


async def complete_booking(
    session: AsyncSession,
    booking_id: int,
    gross_amount: Optional[int] = None,
    actor_id: Optional[int] = None
) -> Booking:
    return await transition_booking(
        session, booking_id, BookingStatus.COMPLETED, actor_id=actor_id, gross_amount=gross_amount
    )


def _validate_rating(rating) -> int:
    # bool is an int subclass; True must not pass as a 1-star rating
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidRating(f"Rating must be a whole number from {MIN_RATING} to {MAX_RATING}", rating=rating)
    if rating < MIN_RATING or rating > MAX_RATING:
        raise InvalidRating(f"Rating must be a whole number from {MIN_RATING} to {MAX_RATING}", rating=rating)
    return rating


async def _update_provider_rating(session: AsyncSession, provider_id: int) -> None:
    stmt = select(func.avg(Booking.rating), func.count(Booking.id)).where(
        Booking.provider_id == provider_id,
        Booking.rating.is_not(None)
    )
    avg_rating, total = (await session.execute(stmt)).one()
    await session.execute(
        update(ProviderProfile)
        .where(ProviderProfile.user_id == provider_id)
        .values(rating=round(float(avg_rating or 0), 2), total_reviews=total)
        .execution_options(synchronize_session=False)
    )


async def review_booking(
    session: AsyncSession,
    booking_id: int,
    rating: int,
    review: Optional[str] = None,
    actor_id: Optional[int] = None
) -> Booking:
    """
    Attach a rating (1-5) and optional review to a COMPLETED booking, once.

    Raises:
        InvalidRating: rating is not an integer in 1..5; booking untouched
        IllegalTransition: booking is not COMPLETED
        AlreadyReviewed: a rating is already attached
    """
    rating = _validate_rating(rating)

    try:
        booking = await get_booking(session, booking_id, refresh=True)
        if actor_id is not None and actor_id != booking.customer_id:
            raise Forbidden(f"Only the customer can review booking {booking_id}")
        if booking.status != BookingStatus.COMPLETED.value:
            raise IllegalTransition(
                f"Booking {booking_id} is {booking.status}, only completed bookings can be reviewed",
                current=booking.status
            )
        if booking.rating is not None:
            raise AlreadyReviewed(f"Booking {booking_id} already reviewed")

        result = await session.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.rating.is_(None)
            )
            .values(rating=rating, review=review)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyReviewed(f"Booking {booking_id} already reviewed")

        await _update_provider_rating(session, booking.provider_id)
        await session.commit()
        booking = await get_booking(session, booking_id, refresh=True)
    except Exception:
        await session.rollback()
        raise

    logging.info(f"Booking {booking_id} reviewed: {rating}/5")
    return booking


async def list_customer_bookings(session: AsyncSession, customer_id: int) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(Booking.customer_id == customer_id)
        .order_by(Booking.scheduled_date.desc(), Booking.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_provider_bookings(
    session: AsyncSession,
    provider_id: int,
    status: Optional[BookingStatus] = None
) -> List[Booking]:
    stmt = select(Booking).where(Booking.provider_id == provider_id)
    if status:
        stmt = stmt.where(Booking.status == BookingStatus(status).value)
    stmt = stmt.order_by(Booking.scheduled_date.desc(), Booking.id.desc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
