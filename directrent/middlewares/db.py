from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

SESSION_FACTORY = web.AppKey("session_factory", async_sessionmaker)


@web.middleware
async def db_session_middleware(request: web.Request, handler):
    """One AsyncSession per request, available as request["session"]."""
    async with request.app[SESSION_FACTORY]() as session:
        request["session"] = session
        try:
            response = await handler(request)
            # Services commit their own work; this only closes out reads
            await session.commit()
            return response
        except Exception:
            await session.rollback()
            raise
