from datetime import date
from typing import Any, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from directrent.database.models import BookingStatus, PayoutMethod, TargetKind
from directrent.services.tier_catalog import TIERS
from directrent.utils.money import to_pesewas


class _Request(BaseModel):
    # Clients send camelCase; services take snake_case
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _parse_cedis(v) -> Optional[int]:
    if v is None:
        return None
    if isinstance(v, float):
        # JSON numbers arrive as float; go through str to keep "150.1" exact
        v = repr(v)
    if isinstance(v, str):
        # Replace common separators
        v = v.replace(',', '').replace(' ', '')
    return to_pesewas(v)


class UnlockContactRequest(_Request):
    user_id: int = Field(alias="userId", gt=0)
    target_id: str = Field(alias="targetId", min_length=1, max_length=128)
    target_kind: TargetKind = Field(default=TargetKind.property, alias="targetKind")


class ApplySubscriptionRequest(_Request):
    """Payment gateway callback {reference, tier, amountPaid} plus the user"""
    user_id: int = Field(alias="userId", gt=0)
    tier_code: str = Field(alias="tierCode")
    payment_reference: str = Field(alias="paymentReference", min_length=1, max_length=128)
    amount_paid: Optional[int] = Field(default=None, alias="amountPaid", ge=0)

    @field_validator('tier_code', mode='before')
    def known_paid_tier(cls, v):
        code = str(v).strip().upper()
        tier = TIERS.get(code)
        if tier is None:
            raise ValueError(f"Unknown tier {v!r}")
        if tier.price <= 0:
            raise ValueError(f"Tier {code} cannot be purchased")
        return code

    @field_validator('amount_paid', mode='before')
    def parse_amount(cls, v):
        return _parse_cedis(v)


class CreateBookingRequest(_Request):
    customer_id: int = Field(alias="customerId", gt=0)
    provider_id: int = Field(alias="providerId", gt=0)
    scheduled_date: date = Field(alias="scheduledDate")
    scheduled_time: Optional[str] = Field(default=None, alias="scheduledTime", max_length=16)
    address: str = Field(min_length=1, max_length=500)
    city: str = Field(min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)
    service_type: Optional[str] = Field(default=None, alias="serviceType")
    quoted_amount: Optional[int] = Field(default=None, alias="quotedAmount")

    @field_validator('address', 'city', mode='before')
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator('quoted_amount', mode='before')
    def parse_amount(cls, v):
        return _parse_cedis(v)


class BookingStatusRequest(_Request):
    status: BookingStatus = Field(validation_alias=AliasChoices("newStatus", "status"))
    actor_id: Optional[int] = Field(default=None, alias="actorId")
    gross_amount: Optional[int] = Field(default=None, alias="grossAmount")

    @field_validator('status', mode='before')
    def upper(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('gross_amount', mode='before')
    def parse_amount(cls, v):
        return _parse_cedis(v)


class ReviewRequest(_Request):
    # Range is checked by the booking service so the client gets INVALID_RATING
    rating: Any
    review: Optional[str] = Field(default=None, max_length=2000)
    actor_id: Optional[int] = Field(default=None, alias="actorId")


class WithdrawRequest(_Request):
    provider_id: int = Field(alias="providerId", gt=0)
    amount: int = Field(gt=0)
    method: PayoutMethod
    account_ref: str = Field(alias="accountRef", min_length=10, max_length=34)
    account_name: Optional[str] = Field(default=None, alias="accountName", min_length=3, max_length=100)

    @field_validator('amount', mode='before')
    def parse_amount(cls, v):
        return _parse_cedis(v)

    @field_validator('method', mode='before')
    def upper(cls, v):
        return v.upper() if isinstance(v, str) else v


class SettleWithdrawalRequest(_Request):
    succeeded: bool
