"""
Security manager for IP rate limiting and abuse prevention using Redis.
Provides per-route rate limiting, IP blacklisting, and abuse tracking.
"""

from typing import Optional

from fastapi import HTTPException, Request, status
from redis.exceptions import ResponseError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.redis_manager import redis_manager

logger = get_logger(prefix="[SecurityManager]")

BLACKLISTED_MSG = "Your IP has been temporarily blacklisted due to excessive abuse."
RATE_LIMITED_MSG = "Too many requests. Please try again later."

RATE_LIMIT_SCRIPT = """
local rate_key = KEYS[1]
local abuse_key = KEYS[2]
local blacklist_key = KEYS[3]
local requests_allowed = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local blacklist_threshold = tonumber(ARGV[3])
local blacklist_duration = tonumber(ARGV[4])
local count = redis.call('INCR', rate_key)
if count == 1 then
    redis.call('EXPIRE', rate_key, period)
end
if count > requests_allowed then
    local abuse_count = redis.call('INCR', abuse_key)
    if abuse_count == 1 then
        redis.call('EXPIRE', abuse_key, blacklist_duration)
    end
    if abuse_count >= blacklist_threshold then
        redis.call('SET', blacklist_key, 1, 'EX', blacklist_duration)
        return {count, abuse_count, 'BLACKLISTED'}
    end
    return {count, abuse_count, 'RATE_LIMITED'}
end
return {count, 0, 'OK'}
"""


class SecurityManager:
    """Manages rate limiting and blacklisting for API endpoints using Redis."""

    def __init__(self, redis=None) -> None:
        self.redis_manager = redis or redis_manager
        self.blacklist_threshold: int = settings.BLACKLIST_THRESHOLD
        self.blacklist_duration: int = settings.BLACKLIST_DURATION
        self.env_prefix: str = settings.ENV
        self.logger = logger

    def get_client_ip(self, request: Request) -> str:
        """Extract the client IP address from the request headers or connection info."""
        x_forwarded_for = request.headers.get("x-forwarded-for")
        if x_forwarded_for:
            return x_forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def is_trusted_ip(self, ip: str) -> bool:
        """Return True if the IP is localhost."""
        return ip in ("127.0.0.1", "::1")

    async def is_blacklisted(self, ip: str) -> bool:
        redis_conn = await self.redis_manager.get_redis()
        return bool(await redis_conn.exists(f"{self.env_prefix}:blacklist:{ip}"))

    async def check_rate_limit(
        self,
        request: Request,
        action: str = "default",
        rate_limit_requests: Optional[int] = None,
        rate_limit_period: Optional[int] = None,
    ) -> None:
        """
        Check rate limit for a given action and IP. Allows per-route customization.

        Raises:
            HTTPException: 403 if blacklisted, 429 if the rate limit is exceeded.
        """
        ip = self.get_client_ip(request)
        if self.is_trusted_ip(ip):
            return
        redis_conn = await self.redis_manager.get_redis()
        if await self.is_blacklisted(ip):
            self.logger.warning("Blocked request from blacklisted IP: %s", ip)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=BLACKLISTED_MSG)

        key = f"{self.env_prefix}:ratelimit:{action}:{ip}"
        abuse_key = f"{self.env_prefix}:abuse:{ip}"
        blacklist_key = f"{self.env_prefix}:blacklist:{ip}"
        requests_allowed = rate_limit_requests if rate_limit_requests is not None else settings.RATE_LIMIT_REQUESTS
        period = rate_limit_period if rate_limit_period is not None else settings.RATE_LIMIT_PERIOD_SECONDS
        try:
            count, abuse_count, status_flag = await redis_conn.eval(
                RATE_LIMIT_SCRIPT,
                3,
                key,
                abuse_key,
                blacklist_key,
                requests_allowed,
                period,
                self.blacklist_threshold,
                self.blacklist_duration,
            )
        except ResponseError as lua_exc:
            self.logger.error("Lua script failed for rate limiting: %s. Falling back to Python logic.", lua_exc)
            count = await redis_conn.incr(key)
            if count == 1:
                await redis_conn.expire(key, period)
            abuse_count = 0
            status_flag = "OK"
            if count > requests_allowed:
                abuse_count = await redis_conn.incr(abuse_key)
                if abuse_count == 1:
                    await redis_conn.expire(abuse_key, self.blacklist_duration)
                if abuse_count >= self.blacklist_threshold:
                    await redis_conn.set(blacklist_key, 1, ex=self.blacklist_duration)
                    status_flag = "BLACKLISTED"
                else:
                    status_flag = "RATE_LIMITED"

        if status_flag == "BLACKLISTED":
            self.logger.error("IP %s has been blacklisted after %d abuses.", ip, abuse_count)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=BLACKLISTED_MSG)
        if status_flag == "RATE_LIMITED":
            self.logger.warning("Rate limit exceeded for IP %s (action: %s). Abuse count: %d", ip, action, abuse_count)
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMITED_MSG)


security_manager = SecurityManager()
