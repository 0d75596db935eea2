"""
Rate limiting glue for FastAPI endpoints.

Resolves the client IP and turns a denied RateLimitResult into a 429
with Retry-After and X-RateLimit-* headers.
"""

import math
import logging
from fastapi import Depends, Request, HTTPException, status
from app.core.rate_limiter import RateLimiter, get_rate_limiter, rate_limit_headers

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Extract the client's IP address from the request.

    Checks proxy headers in order: X-Forwarded-For, X-Real-IP,
    X-Vercel-Forwarded-For, then the socket peer. Only a request with no
    peer at all resolves to "unknown", which the limiter never throttles.

    Args:
        request: FastAPI request object

    Returns:
        Client IP address as string
    """
    # X-Forwarded-For can contain multiple IPs, take the first (client IP)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    vercel_ip = request.headers.get("X-Vercel-Forwarded-For")
    if vercel_ip:
        return vercel_ip.split(",")[0].strip()

    # Fall back to direct connection IP
    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def enforce_rate_limit(category: str, error_message: str = "Too many requests. Please try again later."):
    """
    Build a dependency that counts the request against a rate limit category.

    Args:
        category: Rate limit category (e.g. "otpRequest")
        error_message: Detail returned with the 429

    Returns:
        FastAPI dependency callable

    Raises:
        HTTPException: 429 Too Many Requests if the limit is exceeded
    """
    def dependency(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> None:
        client_ip = get_client_ip(request)
        result = limiter.check(client_ip, category)

        if not result.allowed:
            limit = limiter.config_for(category).max_requests
            headers = rate_limit_headers(result.remaining, result.reset_in, limit)
            headers["Retry-After"] = str(math.ceil(result.reset_in / 1000))
            logger.info(f"Rejected {category} request from {client_ip}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=error_message,
                headers=headers
            )

    return dependency
