"""
Subscription tier catalog - the single source of prices, contact allowances
and commission rates. Read-only at runtime; clients fetch it from the API.

Seeker tiers (tenants/landlords) meter contact unlocks. Provider tiers set
the commission charged on completed bookings and also carry an allowance.
FREE is shared by both audiences.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from directrent.errors import UnknownTier
from directrent.utils.money import format_amount

# Commission when the provider's tier is FREE (or the tier sets no rate)
DEFAULT_COMMISSION_BPS = 1_200

FREE_TIER = "FREE"

# Days between FREE-tier allowance refreshes
FREE_REFRESH_DAYS = 30


@dataclass(frozen=True)
class SubscriptionTier:
    code: str
    name: str
    price: int  # pesewas per cycle
    contacts: Optional[int]  # None = unlimited
    duration_days: int
    commission_bps: int
    audience: str  # "seeker", "provider" or "any"
    features: Tuple[str, ...] = ()

    @property
    def unlimited(self) -> bool:
        return self.contacts is None

    def to_dict(self) -> dict:
        return {
            "tier": self.code,
            "name": self.name,
            "price": format_amount(self.price),
            "currency": "GHS",
            "contacts": "unlimited" if self.unlimited else self.contacts,
            "durationDays": self.duration_days,
            "commissionRate": f"{self.commission_bps / 100:g}%",
            "audience": self.audience,
            "features": list(self.features),
        }


TIERS: Dict[str, SubscriptionTier] = {
    t.code: t for t in (
        SubscriptionTier(
            code=FREE_TIER, name="Free", price=0, contacts=3, duration_days=30,
            commission_bps=DEFAULT_COMMISSION_BPS, audience="any",
            features=("3 owner contacts/month", "Basic property search", "Save favorites"),
        ),
        SubscriptionTier(
            code="BASIC", name="Basic", price=5_000, contacts=15, duration_days=30,
            commission_bps=DEFAULT_COMMISSION_BPS, audience="seeker",
            features=("15 owner contacts/month", "Priority search results", "Agreement templates"),
        ),
        SubscriptionTier(
            code="RELAX", name="Relax", price=10_000, contacts=40, duration_days=30,
            commission_bps=DEFAULT_COMMISSION_BPS, audience="seeker",
            features=("40 owner contacts/month", "Home services discount", "Priority support"),
        ),
        SubscriptionTier(
            code="SUPERUSER", name="SuperUser", price=20_000, contacts=None, duration_days=30,
            commission_bps=DEFAULT_COMMISSION_BPS, audience="seeker",
            features=("Unlimited owner contacts", "Top search placement", "Verified badge"),
        ),
        SubscriptionTier(
            code="FEATURED", name="Featured", price=10_000, contacts=15, duration_days=30,
            commission_bps=1_000, audience="provider",
            features=("Featured badge", "Priority in search results", "Lower commission (10%)"),
        ),
        SubscriptionTier(
            code="PREMIUM", name="Premium", price=25_000, contacts=None, duration_days=30,
            commission_bps=800, audience="provider",
            features=("Top of search results", "Lowest commission (8%)", "Lead alerts"),
        ),
    )
}


def get_tier(code: str) -> SubscriptionTier:
    tier = TIERS.get(code)
    if tier is None:
        raise UnknownTier(f"Tier {code!r} is not in the catalog", tier=code)
    return tier


def list_tiers(audience: Optional[str] = None) -> List[SubscriptionTier]:
    if audience is None:
        return list(TIERS.values())
    return [t for t in TIERS.values() if t.audience in (audience, "any")]


def commission_rate_for(tier_code: str) -> int:
    """Commission in basis points for a provider on this tier."""
    return get_tier(tier_code).commission_bps
