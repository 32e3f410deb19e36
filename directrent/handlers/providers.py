from aiohttp import web

from directrent.handlers.common import ok, parse_body
from directrent.schemas.validation import WithdrawRequest
from directrent.services.booking_service import list_provider_bookings
from directrent.services.commission_service import (
    get_provider_balance, get_provider_earnings, list_withdrawals, withdraw
)
from directrent.utils.presenters import booking_to_dict, earnings_to_dict, withdrawal_to_dict
from directrent.utils.money import format_amount

routes = web.RouteTableDef()


@routes.get(r"/api/providers/{provider_id:\d+}/earnings")
async def get_earnings(request: web.Request):
    earnings = await get_provider_earnings(request["session"], int(request.match_info["provider_id"]))
    return ok(earnings_to_dict(earnings))


@routes.get(r"/api/providers/{provider_id:\d+}/withdrawals")
async def get_withdrawals(request: web.Request):
    """Current balance plus payout history, newest first."""
    session = request["session"]
    provider_id = int(request.match_info["provider_id"])
    balance = await get_provider_balance(session, provider_id)
    withdrawals = await list_withdrawals(session, provider_id)
    return ok({
        "availableBalance": format_amount(balance.available),
        "pendingPayouts": format_amount(balance.pending),
        "withdrawals": [withdrawal_to_dict(w) for w in withdrawals],
    })


@routes.get(r"/api/providers/{provider_id:\d+}/bookings")
async def get_provider_bookings(request: web.Request):
    bookings = await list_provider_bookings(
        request["session"],
        int(request.match_info["provider_id"]),
        status=request.query.get("status")
    )
    return ok([booking_to_dict(b) for b in bookings])


@routes.post("/api/providers/withdraw")
async def post_withdraw(request: web.Request):
    body = await parse_body(request, WithdrawRequest)
    withdrawal = await withdraw(
        request["session"],
        body.provider_id,
        body.amount,
        body.method.value,
        body.account_ref,
        account_name=body.account_name
    )
    return ok(withdrawal_to_dict(withdrawal), status=201)
