import asyncio
import contextlib
import logging
import sys
from typing import Optional

from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

from directrent.config import config
from directrent.cron import scheduler_loop
from directrent.handlers import admin, bookings, common, entitlements, providers
from directrent.middlewares.db import SESSION_FACTORY, db_session_middleware
from directrent.middlewares.error import error_middleware
from directrent.middlewares.rate_limit import RateLimitMiddleware


def create_app(session_factory: Optional[async_sessionmaker] = None, rate_limit: Optional[int] = None) -> web.Application:
    if session_factory is None:
        from directrent.database.core import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    # Order matters: Error -> RateLimit -> DB
    # 1. Error Handler (wraps everything)
    # 2. Rate Limiting (rejects before a session is opened)
    # 3. DB Session (provides request["session"])
    app = web.Application(middlewares=[
        error_middleware,
        web.middleware(RateLimitMiddleware(rate=rate_limit or config.RATE_LIMIT, per=config.RATE_PER)),
        db_session_middleware,
    ])
    app[SESSION_FACTORY] = session_factory

    for module in (common, entitlements, bookings, providers, admin):
        app.router.add_routes(module.routes)

    return app


async def _run_scheduler(app: web.Application):
    task = asyncio.create_task(scheduler_loop(app[SESSION_FACTORY]))
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def main():
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        stream=sys.stdout,
    )

    app = create_app()
    app.cleanup_ctx.append(_run_scheduler)

    logging.info(f"Starting DirectRent API on {config.API_HOST}:{config.API_PORT}...")
    web.run_app(app, host=config.API_HOST, port=config.API_PORT, print=None)


if __name__ == "__main__":
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        logging.info("API stopped.")
