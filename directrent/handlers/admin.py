from aiohttp import web

from directrent.handlers.common import ok, parse_body
from directrent.schemas.validation import SettleWithdrawalRequest
from directrent.services.commission_service import get_platform_revenue, settle_withdrawal
from directrent.utils.presenters import revenue_to_dict, withdrawal_to_dict

routes = web.RouteTableDef()


@routes.get("/api/admin/revenue")
async def get_revenue(request: web.Request):
    revenue = await get_platform_revenue(request["session"])
    return ok(revenue_to_dict(revenue))


@routes.post(r"/api/admin/withdrawals/{withdrawal_id:\d+}/settle")
async def post_settle_withdrawal(request: web.Request):
    """Payout processor reports the outcome of a pending withdrawal."""
    body = await parse_body(request, SettleWithdrawalRequest)
    withdrawal = await settle_withdrawal(
        request["session"], int(request.match_info["withdrawal_id"]), body.succeeded
    )
    return ok(withdrawal_to_dict(withdrawal))
