from aiohttp import web

from directrent.handlers.common import ok, parse_body
from directrent.schemas.validation import ApplySubscriptionRequest, UnlockContactRequest
from directrent.services.entitlement_service import (
    apply_subscription, get_entitlement_status, list_unlocked_contacts, unlock_contact
)
from directrent.utils.presenters import (
    contact_unlock_to_dict, entitlement_to_dict, subscription_to_dict, unlock_to_dict
)

routes = web.RouteTableDef()


@routes.get(r"/api/entitlements/{user_id:\d+}")
async def get_entitlements(request: web.Request):
    status = await get_entitlement_status(request["session"], int(request.match_info["user_id"]))
    return ok(entitlement_to_dict(status))


@routes.get(r"/api/entitlements/{user_id:\d+}/unlocks")
async def get_unlocks(request: web.Request):
    unlocks = await list_unlocked_contacts(request["session"], int(request.match_info["user_id"]))
    return ok([contact_unlock_to_dict(u) for u in unlocks])


@routes.post("/api/contacts/unlock")
async def post_unlock(request: web.Request):
    body = await parse_body(request, UnlockContactRequest)
    result = await unlock_contact(request["session"], body.user_id, body.target_id, body.target_kind)
    return ok(unlock_to_dict(result))


@routes.post("/api/subscriptions/apply")
async def post_apply_subscription(request: web.Request):
    """Payment gateway callback. Replays answer 200 with applied=false."""
    body = await parse_body(request, ApplySubscriptionRequest)
    result = await apply_subscription(
        request["session"],
        body.user_id,
        body.tier_code,
        body.payment_reference,
        amount_paid=body.amount_paid
    )
    return ok(subscription_to_dict(result))
