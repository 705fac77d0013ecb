from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from fastapi import Request

from .config import Settings, get_settings
from .envelope import ErrorEnvelope
from .rate_limit import MultiTierRateLimiter, Number, RateLimitDecision, UnknownOperationClass
from .tier_loader import load_tiers

logger = logging.getLogger("quota-gate")


def build_rate_limiter(settings: Optional[Settings] = None) -> MultiTierRateLimiter:
    """Construct the limiter for one process from the configured tier file."""
    settings = settings or get_settings()
    return MultiTierRateLimiter(load_tiers(settings.tiers_file))


def get_rate_limiter(request: Request) -> MultiTierRateLimiter:
    """
    Dependency returning the limiter built during app startup.

    Tests swap it by assigning `app.state.rate_limiter` before issuing requests.
    """

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RuntimeError("Rate limiter is not initialized; was the app lifespan started?")
    return limiter


def client_key(request: Request, header: str) -> str:
    """Caller identity: the configured header, else the peer address."""
    supplied = (request.headers.get(header) or "").strip()
    if supplied:
        return supplied
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def rate_limited(operation_class: str, weight: Number = 1) -> Callable[[Request], Optional[RateLimitDecision]]:
    """
    Dependency factory charging ``weight`` against ``operation_class`` per caller.

    Returns the decision on admit (None when rate limiting is disabled) and
    raises ErrorEnvelope(429) on deny, or ErrorEnvelope(500) when the
    loaded tiers do not define ``operation_class``.
    """

    def _dependency(request: Request) -> Optional[RateLimitDecision]:
        settings = get_settings()
        if not settings.enable_rate_limit:
            return None

        limiter = get_rate_limiter(request)
        key = client_key(request, settings.key_header)
        try:
            decision = limiter.evaluate(key, operation_class, weight)
        except UnknownOperationClass as exc:
            logger.error("route charges unregistered operation class %r; known: %s", operation_class, exc.known)
            raise ErrorEnvelope(
                500,
                "RATE_LIMIT_MISCONFIGURED",
                f"Operation class {operation_class!r} is not configured",
                details={"operation_class": operation_class, "known": exc.known},
            ) from exc
        if not decision.allowed:
            retry_after = max(math.ceil(decision.reset_in_ms / 1000), 1)
            raise ErrorEnvelope(
                429,
                "RATE_LIMITED",
                f"Rate limit exceeded for {operation_class}",
                details={
                    "operation_class": operation_class,
                    "limit": decision.limit,
                    "remaining": decision.remaining,
                    "reset_in_ms": decision.reset_in_ms,
                },
                headers={"Retry-After": str(retry_after)},
            )
        return decision

    return _dependency
