import enum
from datetime import datetime, date
from typing import Optional, List
from sqlalchemy import BigInteger, String, Boolean, ForeignKey, Integer, Numeric, DateTime, Text, DATE, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from directrent.database.core import Base

# Enums
class UserRole(str, enum.Enum):
    TENANT = "TENANT"
    LANDLORD = "LANDLORD"
    SERVICE_PROVIDER = "SERVICE_PROVIDER"

class TargetKind(str, enum.Enum):
    property = "property"
    provider = "provider"

class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class PayoutMethod(str, enum.Enum):
    MTN = "MTN"
    VODAFONE = "VODAFONE"
    AIRTELTIGO = "AIRTELTIGO"
    BANK = "BANK"

class WithdrawalStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# 3.1 User
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role: Mapped[UserRole] = mapped_column(String, default=UserRole.TENANT.value)
    phone: Mapped[str] = mapped_column(String, unique=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String)

    # Owned by the entitlement ledger
    subscription_tier: Mapped[str] = mapped_column(String, default="FREE")
    subscription_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    free_contacts_remaining: Mapped[int] = mapped_column(Integer, default=3)
    free_contacts_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    unlocks: Mapped[List["ContactUnlock"]] = relationship(back_populates="user")
    provider_profile: Mapped[Optional["ProviderProfile"]] = relationship(back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint('free_contacts_remaining >= 0', name='ck_users_remaining_non_negative'),
    )


# 3.2 ContactUnlock (append-only)
class ContactUnlock(Base):
    __tablename__ = "contact_unlocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    target_id: Mapped[str] = mapped_column(String)
    target_kind: Mapped[TargetKind] = mapped_column(String, default=TargetKind.property.value)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship(back_populates="unlocks")

    __table_args__ = (
        UniqueConstraint('user_id', 'target_id', name='uq_unlock_user_target'),
    )


# 3.3 SubscriptionPayment (idempotency record for gateway callbacks)
class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    tier_code: Mapped[str] = mapped_column(String)
    amount_paid: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # pesewas
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# 3.4 ProviderProfile
class ProviderProfile(Base):
    __tablename__ = "provider_profiles"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    business_name: Mapped[str] = mapped_column(String)
    service_type: Mapped[str] = mapped_column(String)
    rating: Mapped[float] = mapped_column(Numeric(3, 2), default=0)
    total_reviews: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship(back_populates="provider_profile")


# 3.5 Booking
class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    service_type: Mapped[str] = mapped_column(String)

    scheduled_date: Mapped[date] = mapped_column(DATE)
    scheduled_time: Mapped[Optional[str]] = mapped_column(String)  # "14:30", free-form from clients
    address: Mapped[str] = mapped_column(String)
    city: Mapped[str] = mapped_column(String)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    quoted_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # pesewas

    status: Mapped[BookingStatus] = mapped_column(String, default=BookingStatus.PENDING.value)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    review: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    commission: Mapped[Optional["CommissionRecord"]] = relationship(back_populates="booking", uselist=False)

    __table_args__ = (
        CheckConstraint('rating IS NULL OR (rating >= 1 AND rating <= 5)', name='ck_bookings_rating_range'),
        Index('ix_bookings_provider_status', 'provider_id', 'status'),
        Index('ix_bookings_customer', 'customer_id'),
    )


# 3.6 CommissionRecord (immutable ledger entry)
class CommissionRecord(Base):
    __tablename__ = "commission_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), unique=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    gross_amount: Mapped[int] = mapped_column(BigInteger)
    rate_bps: Mapped[int] = mapped_column(Integer)
    commission_amount: Mapped[int] = mapped_column(BigInteger)
    payout_amount: Mapped[int] = mapped_column(BigInteger)
    tier_code: Mapped[str] = mapped_column(String)  # provider tier at posting time

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    booking: Mapped["Booking"] = relationship(back_populates="commission")

    __table_args__ = (
        CheckConstraint('commission_amount + payout_amount = gross_amount', name='ck_commission_split'),
    )


# 3.7 ProviderBalance
class ProviderBalance(Base):
    __tablename__ = "provider_balances"

    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    available: Mapped[int] = mapped_column(BigInteger, default=0)
    pending: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint('available >= 0', name='ck_balance_available_non_negative'),
        CheckConstraint('pending >= 0', name='ck_balance_pending_non_negative'),
    )


# 3.8 Withdrawal
class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)

    method: Mapped[PayoutMethod] = mapped_column(String)
    account_ref: Mapped[str] = mapped_column(String)
    account_name: Mapped[Optional[str]] = mapped_column(String)

    status: Mapped[WithdrawalStatus] = mapped_column(String, default=WithdrawalStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
