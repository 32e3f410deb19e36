import json
from typing import Type, TypeVar
from aiohttp import web
from pydantic import BaseModel

from directrent.services.tier_catalog import list_tiers

routes = web.RouteTableDef()

M = TypeVar("M", bound=BaseModel)


async def parse_body(request: web.Request, model: Type[M]) -> M:
    """Read the JSON body into `model`; pydantic errors surface as VALIDATION_ERROR."""
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return model.model_validate(data)


def ok(data, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "data": data}, status=status)


@routes.get("/health")
async def health(request: web.Request):
    return web.json_response({"status": "ok"})


@routes.get("/api/subscriptions/tiers")
async def get_tiers(request: web.Request):
    audience = request.query.get("audience")
    if audience not in (None, "seeker", "provider"):
        raise ValueError("audience must be 'seeker' or 'provider'")
    return ok([tier.to_dict() for tier in list_tiers(audience)])
