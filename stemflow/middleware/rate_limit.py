"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from stemflow.config import get_settings

settings = get_settings()


def get_identity_or_ip(request: Request) -> str:
    """
    Get rate limit key from the caller's identity headers or IP address.

    A user id wins over a fingerprint, matching usage limits.
    """
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"

    fingerprint = request.headers.get("X-Fingerprint")
    if fingerprint:
        return f"fp:{fingerprint}"

    return f"ip:{get_remote_address(request)}"


# Memory storage in development, Redis in production via RATE_LIMIT_STORAGE_URI
limiter = Limiter(
    key_func=get_identity_or_ip,
    storage_uri=settings.rate_limit_storage_uri,
    strategy="fixed-window",
)


def rate_limit_uploads():
    """Rate limit for upload and process endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute;{settings.rate_limit_per_hour}/hour",
        key_func=get_identity_or_ip,
    )


def rate_limit_general():
    """Rate limit for status polling endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute * 4}/minute",
        key_func=get_identity_or_ip,
    )
