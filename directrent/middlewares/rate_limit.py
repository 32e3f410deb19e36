"""
Rate Limiting Middleware

Limits requests per client in a sliding time window. Mobile clients poll
booking lists every few seconds, so the default leaves room for that.
"""
import logging
from datetime import datetime, timedelta
from collections import defaultdict
from typing import Dict, List

from aiohttp import web

from directrent.middlewares.error import error_response


class RateLimitMiddleware:
    """
    Sliding-window rate limiter keyed by client.

    The key is the X-User-Id header when the API gateway sets one, otherwise
    the remote address. Register with ``web.middleware(RateLimitMiddleware())``.
    """

    def __init__(self, rate: int = 60, per: int = 60, exempt_paths: tuple = ("/health",)):
        """
        Args:
            rate: Maximum number of requests
            per: Time window in seconds
            exempt_paths: Paths never limited
        """
        self.rate = rate
        self.per = per
        self.exempt_paths = exempt_paths
        self.requests: Dict[str, List[datetime]] = defaultdict(list)
        self._last_prune = datetime.now()

        logging.info(f"Rate limiter initialized: {rate} requests per {per} seconds")

    def _prune(self, now: datetime) -> None:
        """Forget clients with no request inside the current window."""
        window = timedelta(seconds=self.per)
        stale = [key for key, times in self.requests.items() if not times or now - times[-1] >= window]
        for key in stale:
            del self.requests[key]
        self._last_prune = now

    def _client_key(self, request: web.Request) -> str:
        return request.headers.get("X-User-Id") or request.remote or "unknown"

    async def __call__(self, request: web.Request, handler):
        if request.path in self.exempt_paths:
            return await handler(request)

        key = self._client_key(request)
        now = datetime.now()
        if now - self._last_prune >= timedelta(seconds=self.per):
            self._prune(now)

        # Clean old requests
        self.requests[key] = [
            req_time for req_time in self.requests[key]
            if now - req_time < timedelta(seconds=self.per)
        ]

        if len(self.requests[key]) >= self.rate:
            logging.warning(
                f"Rate limit exceeded for {key}: "
                f"{len(self.requests[key])} requests in {self.per}s"
            )
            return error_response(429, "TOO_MANY_REQUESTS", "Too many requests")

        self.requests[key].append(now)
        return await handler(request)

