import logging

import redis
from fastapi import HTTPException, Request, status

from . import events
from .settings import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Address used to key rate limits.

    `X-Forwarded-For` is only read when `trusted_proxy_hops` is set, and then the
    entry appended by the outermost trusted proxy is used.
    """
    hops = settings.trusted_proxy_hops
    forwarded = request.headers.get("x-forwarded-for")
    if hops > 0 and forwarded:
        chain = [part.strip() for part in forwarded.split(",") if part.strip()]
        if len(chain) >= hops:
            return chain[-hops]
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """Fixed-window request limiter backed by Redis, used as a route dependency.

    Lets requests through when Redis is unreachable.
    """

    def __init__(self, scope: str, limit: int, window_seconds: int):
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    def __call__(self, request: Request) -> None:
        user_agent = (request.headers.get("user-agent") or "").lower()
        blocked = [ua.strip().lower() for ua in settings.blocked_user_agents.split(",") if ua.strip()]
        if any(ua in user_agent for ua in blocked):
            logger.warning(f"Blocked user agent on {self.scope}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

        r = events.get_redis()
        if r is None:
            return

        key = f"ratelimit:{self.scope}:{get_client_ip(request)}"
        try:
            count = r.incr(key)
            if count == 1:
                r.expire(key, self.window_seconds)
        except redis.RedisError as e:
            logger.warning(f"Rate limiter unavailable: {e}")
            return

        if count > self.limit:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many attempts. Please try again later.",
                headers={"Retry-After": str(self.window_seconds)},
            )
