"""
JSON shapes for API responses. Amounts go out as cedi strings ("150.00"),
timestamps as ISO-8601 UTC.
"""
from typing import Optional

from directrent.database.models import Booking, CommissionRecord, ContactUnlock, Withdrawal
from directrent.services.commission_service import ProviderEarnings, PlatformRevenue
from directrent.services.entitlement_service import EntitlementStatus, SubscriptionResult, UnlockResult
from directrent.utils.clock import format_date
from directrent.utils.money import format_amount


def _amount(value: Optional[int]) -> Optional[str]:
    return format_amount(value) if value is not None else None


def _remaining(remaining: Optional[int], unlimited: bool):
    return "unlimited" if unlimited else remaining


def entitlement_to_dict(status: EntitlementStatus) -> dict:
    return {
        "userId": status.user_id,
        "tier": status.tier,
        "remaining": _remaining(status.remaining, status.unlimited),
        "unlimited": status.unlimited,
        "expiresAt": format_date(status.expires_at),
    }


def unlock_to_dict(result: UnlockResult) -> dict:
    return {
        # Successful calls always leave the contact unlocked, new or repeat
        "unlocked": True,
        "alreadyUnlocked": result.already_unlocked,
        "remaining": _remaining(result.remaining_after, result.unlimited),
        "unlimited": result.unlimited,
    }


def contact_unlock_to_dict(unlock: ContactUnlock) -> dict:
    return {
        "targetId": unlock.target_id,
        "targetKind": unlock.target_kind,
        "unlockedAt": format_date(unlock.unlocked_at),
    }


def subscription_to_dict(result: SubscriptionResult) -> dict:
    return {
        "tier": result.tier,
        "expiresAt": format_date(result.expires_at),
        "remaining": "unlimited" if result.remaining is None else result.remaining,
        "applied": result.applied,
    }


def booking_to_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "bookingId": booking.id,
        "customerId": booking.customer_id,
        "providerId": booking.provider_id,
        "serviceType": booking.service_type,
        "scheduledDate": booking.scheduled_date.isoformat(),
        "scheduledTime": booking.scheduled_time,
        "address": booking.address,
        "city": booking.city,
        "notes": booking.notes,
        "quotedAmount": _amount(booking.quoted_amount),
        "status": booking.status,
        "rating": booking.rating,
        "review": booking.review,
        "createdAt": format_date(booking.created_at),
        "completedAt": format_date(booking.completed_at),
        "cancelledAt": format_date(booking.cancelled_at),
        "cancelledBy": booking.cancelled_by,
    }


def commission_to_dict(record: CommissionRecord) -> dict:
    return {
        "bookingId": record.booking_id,
        "grossAmount": format_amount(record.gross_amount),
        "rateBps": record.rate_bps,
        "commissionAmount": format_amount(record.commission_amount),
        "payoutAmount": format_amount(record.payout_amount),
        "tier": record.tier_code,
        "createdAt": format_date(record.created_at),
    }


def withdrawal_to_dict(withdrawal: Withdrawal) -> dict:
    return {
        "id": withdrawal.id,
        "withdrawalId": withdrawal.id,
        "reference": withdrawal.reference,
        "providerId": withdrawal.provider_id,
        "amount": format_amount(withdrawal.amount),
        "method": withdrawal.method,
        "status": withdrawal.status,
        "createdAt": format_date(withdrawal.created_at),
        "settledAt": format_date(withdrawal.settled_at),
    }


def earnings_to_dict(earnings: ProviderEarnings) -> dict:
    return {
        "providerId": earnings.provider_id,
        "totalPayouts": format_amount(earnings.total_payouts),
        "totalCommissions": format_amount(earnings.total_commissions),
        "completedBookings": earnings.completed_bookings,
        "availableBalance": format_amount(earnings.available),
        "pendingPayouts": format_amount(earnings.pending),
        "withdrawn": format_amount(earnings.withdrawn),
        "recent": [commission_to_dict(r) for r in earnings.recent],
    }


def revenue_to_dict(revenue: PlatformRevenue) -> dict:
    return {
        "commissionRevenue": format_amount(revenue.commission_revenue),
        "subscriptionRevenue": format_amount(revenue.subscription_revenue),
        "totalRevenue": format_amount(revenue.commission_revenue + revenue.subscription_revenue),
        "bookingVolume": format_amount(revenue.booking_volume),
        "completedBookings": revenue.total_bookings,
        "providersByTier": revenue.users_by_tier,
    }
