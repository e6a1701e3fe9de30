"""API middleware for rate limiting and request handling."""

from api.middleware.rate_limiter import RateLimiter, RateRecord, client_id

__all__ = ["RateLimiter", "RateRecord", "client_id"]
