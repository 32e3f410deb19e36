from aiohttp import web

from directrent.handlers.common import ok, parse_body
from directrent.schemas.validation import BookingStatusRequest, CreateBookingRequest, ReviewRequest
from directrent.services.booking_service import (
    create_booking, get_booking, review_booking, transition_booking
)
from directrent.services.commission_service import get_commission_record
from directrent.utils.presenters import booking_to_dict, commission_to_dict

routes = web.RouteTableDef()


@routes.post("/api/bookings")
async def post_booking(request: web.Request):
    body = await parse_body(request, CreateBookingRequest)
    booking = await create_booking(
        request["session"],
        customer_id=body.customer_id,
        provider_id=body.provider_id,
        scheduled_date=body.scheduled_date,
        address=body.address,
        city=body.city,
        scheduled_time=body.scheduled_time,
        notes=body.notes,
        quoted_amount=body.quoted_amount,
        service_type=body.service_type
    )
    return ok(booking_to_dict(booking), status=201)


@routes.get(r"/api/bookings/{booking_id:\d+}")
async def get_booking_view(request: web.Request):
    session = request["session"]
    booking = await get_booking(session, int(request.match_info["booking_id"]))
    data = booking_to_dict(booking)
    record = await get_commission_record(session, booking.id)
    data["commission"] = commission_to_dict(record) if record else None
    return ok(data)


@routes.put(r"/api/bookings/{booking_id:\d+}/status")
async def put_booking_status(request: web.Request):
    body = await parse_body(request, BookingStatusRequest)
    session = request["session"]
    booking = await transition_booking(
        session,
        int(request.match_info["booking_id"]),
        body.status,
        actor_id=body.actor_id,
        gross_amount=body.gross_amount
    )
    data = booking_to_dict(booking)
    record = await get_commission_record(session, booking.id)
    data["commission"] = commission_to_dict(record) if record else None
    return ok(data)


@routes.post(r"/api/bookings/{booking_id:\d+}/review")
async def post_review(request: web.Request):
    body = await parse_body(request, ReviewRequest)
    booking = await review_booking(
        request["session"],
        int(request.match_info["booking_id"]),
        body.rating,
        review=body.review,
        actor_id=body.actor_id
    )
    return ok(booking_to_dict(booking))
