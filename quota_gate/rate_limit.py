"""
Per-key admission control over fixed time windows.

RateLimiter applies one quota to every key it sees. MultiTierRateLimiter
holds one RateLimiter per operation class ("orders", "requests", ...) and
routes calls by class name.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Annotated, Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("quota-gate")

Clock = Callable[[], float]
Number = Union[int, float]
# Bools and numeric strings are rejected rather than coerced.
PositiveNumber = Union[
    Annotated[int, Field(strict=True, gt=0)],
    Annotated[float, Field(strict=True, gt=0, allow_inf_nan=False)],
]


class RateLimitError(RuntimeError):
    """Base class for rate limiter errors."""


class RateLimitConfigError(RateLimitError, ValueError):
    """Raised when a window or quota is not a positive value."""


class InvalidRateLimitArgument(RateLimitError, ValueError):
    """Raised for an empty key or a non-positive weight."""


class UnknownOperationClass(RateLimitError, KeyError):
    """Raised when a call names an operation class that was never registered."""

    def __init__(self, operation_class: Any, known: List[str]):
        self.operation_class = operation_class
        self.known = known
        super().__init__(f"Unknown operation class: {operation_class!r} (known: {', '.join(known)})")

    def __str__(self) -> str:
        return str(self.args[0])


_RATE_UNITS_MS = {
    "s": 1000,
    "sec": 1000,
    "second": 1000,
    "m": 60_000,
    "min": 60_000,
    "minute": 60_000,
    "h": 3_600_000,
    "hr": 3_600_000,
    "hour": 3_600_000,
}


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiterConfig(BaseModel):
    """Window length and weight capacity shared by every key of one limiter."""

    model_config = ConfigDict(frozen=True)

    window_ms: PositiveNumber
    max_requests: PositiveNumber

    @classmethod
    def create(cls, window_ms: Any, max_requests: Any) -> "RateLimiterConfig":
        """Build a config, reporting bad values as RateLimitConfigError."""
        try:
            return cls(window_ms=window_ms, max_requests=max_requests)
        except ValidationError as exc:
            raise RateLimitConfigError(
                f"Invalid rate limit config (window_ms={window_ms!r}, max_requests={max_requests!r})"
            ) from exc

    @classmethod
    def from_rate(cls, rate: str) -> "RateLimiterConfig":
        """Parse a rate like '60/m', '10/s' or '100/h'."""
        try:
            count_str, per = rate.split("/")
            count = int(count_str)
        except (AttributeError, ValueError) as exc:
            raise RateLimitConfigError(f"Invalid rate string: {rate!r}") from exc
        per = per.strip().lower()
        if per not in _RATE_UNITS_MS:
            raise RateLimitConfigError(f"Unsupported rate unit: {per}")
        return cls.create(window_ms=_RATE_UNITS_MS[per], max_requests=count)

    @classmethod
    def coerce(cls, raw: Any) -> "RateLimiterConfig":
        """Accept a config, a '10/s' string, or a {window_ms, max_requests} mapping."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            return cls.from_rate(raw)
        if isinstance(raw, Mapping):
            if "rate" in raw:
                return cls.from_rate(raw["rate"])
            return cls.create(window_ms=raw.get("window_ms"), max_requests=raw.get("max_requests"))
        raise RateLimitConfigError(f"Cannot build a rate limit config from {type(raw).__name__}")


def _exact(value: Number) -> Decimal:
    # str() gives the shortest repr, so 0.1 becomes Decimal("0.1") rather than its binary expansion
    return Decimal(str(value))


def _to_number(value: Decimal) -> Number:
    return int(value) if value == value.to_integral_value() else float(value)


@dataclass
class WindowRecord:
    """Consumption for one key inside its current window."""

    window_start: float
    consumed: Decimal = Decimal(0)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: Number
    limit: Number
    remaining: Number
    reset_in_ms: float
    operation_class: Optional[str] = None


class RateLimitExceeded(RateLimitError):
    """Raised by enforce() when a request is denied."""

    def __init__(self, key: str, decision: RateLimitDecision):
        self.key = key
        self.decision = decision
        target = f"{decision.operation_class} " if decision.operation_class else ""
        super().__init__(f"Rate limit exceeded for {target}key {key!r}")


def _check_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise InvalidRateLimitArgument(f"Key must be a non-empty string, got: {key!r}")


def _check_weight(weight: Any) -> None:
    # bool is an int subclass
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise InvalidRateLimitArgument(f"Weight must be a number, got: {weight!r}")
    if math.isnan(weight) or math.isinf(weight) or weight <= 0:
        raise InvalidRateLimitArgument(f"Weight must be positive and finite, got: {weight}")


class RateLimiter:
    """Fixed-window limiter keyed by caller identity.

    A key's window starts at the first request seen while it has no live
    record and lasts ``window_ms``. Admission is all-or-nothing: a request whose
    weight does not fit in what is left of the quota is denied and charges
    nothing.
    """

    def __init__(self, config: RateLimiterConfig, clock: Optional[Clock] = None):
        if not isinstance(config, RateLimiterConfig):
            config = RateLimiterConfig.coerce(config)
        self._config = config
        self._capacity = _exact(config.max_requests)
        self._clock: Clock = clock or _monotonic_ms
        self._records: Dict[str, WindowRecord] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _is_expired(self, record: WindowRecord, now: float) -> bool:
        return now - record.window_start >= self._config.window_ms

    def _live_record(self, key: str, now: float) -> Optional[WindowRecord]:
        """Return the key's record, collapsed to a fresh window if the old one elapsed.

        Shared by evaluate() and get_count() so both agree on expiry.
        """
        record = self._records.get(key)
        if record is not None and self._is_expired(record, now):
            record.window_start = now
            record.consumed = Decimal(0)
        return record

    def _open_record(self, key: str, now: float) -> WindowRecord:
        record = self._live_record(key, now)
        if record is None:
            record = WindowRecord(window_start=now)
            self._records[key] = record
        return record

    def _decision(self, allowed: bool, record: WindowRecord, now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=allowed,
            count=_to_number(record.consumed),
            limit=self._config.max_requests,
            remaining=_to_number(max(self._capacity - record.consumed, Decimal(0))),
            reset_in_ms=max(record.window_start + self._config.window_ms - now, 0.0),
        )

    def evaluate(self, key: str, weight: Number = 1) -> RateLimitDecision:
        """Admit or deny one request for ``key`` and report the live count."""
        _check_key(key)
        _check_weight(weight)
        charge = _exact(weight)
        with self._lock:
            now = self._clock()
            record = self._open_record(key, now)
            if record.consumed + charge <= self._capacity:
                record.consumed += charge
                return self._decision(True, record, now)
            decision = self._decision(False, record, now)
        logger.debug(
            "rate limit denied key=%s weight=%s consumed=%s limit=%s",
            key,
            weight,
            decision.count,
            decision.limit,
        )
        return decision

    def is_allowed(self, key: str, weight: Number = 1) -> bool:
        return self.evaluate(key, weight).allowed

    def enforce(self, key: str, weight: Number = 1) -> RateLimitDecision:
        """Like evaluate(), but raise RateLimitExceeded on deny."""
        decision = self.evaluate(key, weight)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision)
        return decision

    def get_count(self, key: str) -> Number:
        """Weight admitted for ``key`` in its current window; 0 if absent or expired."""
        _check_key(key)
        with self._lock:
            record = self._live_record(key, self._clock())
            return _to_number(record.consumed) if record is not None else 0

    def reset(self, key: str) -> None:
        _check_key(key)
        with self._lock:
            self._records.pop(key, None)

    def cleanup(self) -> int:
        """Drop records whose window has fully elapsed. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [key for key, record in self._records.items() if self._is_expired(record, now)]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug("rate limit cleanup removed %d expired record(s)", len(expired))
        return len(expired)


# Defaults for the operation classes most hosts need.
DEFAULT_TIERS: Dict[str, RateLimiterConfig] = {
    "orders": RateLimiterConfig(window_ms=60_000, max_requests=100),
    "requests": RateLimiterConfig(window_ms=1_000, max_requests=10),
    "messages": RateLimiterConfig(window_ms=60_000, max_requests=1000),
}


class MultiTierRateLimiter:
    """One independent RateLimiter per operation class.

    Every class must be registered up front; naming an unknown class raises
    UnknownOperationClass instead of silently admitting or creating a tier.
    """

    def __init__(self, tiers: Optional[Mapping[str, Any]] = None, clock: Optional[Clock] = None):
        if tiers is None:
            tiers = DEFAULT_TIERS
        if not tiers:
            raise RateLimitConfigError("At least one operation class must be configured")

        self._limiters: Dict[str, RateLimiter] = {}
        for name, raw in tiers.items():
            if not isinstance(name, str) or not name:
                raise RateLimitConfigError(f"Operation class name must be a non-empty string, got: {name!r}")
            self._limiters[name] = RateLimiter(RateLimiterConfig.coerce(raw), clock=clock)
        # Serializes reset() fan-out against routed calls so no tier is seen half-reset.
        self._lock = threading.RLock()

    @property
    def operation_classes(self) -> List[str]:
        return list(self._limiters)

    @property
    def configs(self) -> Dict[str, RateLimiterConfig]:
        return {name: limiter.config for name, limiter in self._limiters.items()}

    def tier(self, operation_class: str) -> RateLimiter:
        if not isinstance(operation_class, str):
            raise UnknownOperationClass(operation_class, self.operation_classes)
        limiter = self._limiters.get(operation_class)
        if limiter is None:
            raise UnknownOperationClass(operation_class, self.operation_classes)
        return limiter

    def evaluate(self, key: str, operation_class: str, weight: Number = 1) -> RateLimitDecision:
        limiter = self.tier(operation_class)
        with self._lock:
            decision = limiter.evaluate(key, weight)
        return RateLimitDecision(
            allowed=decision.allowed,
            count=decision.count,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_in_ms=decision.reset_in_ms,
            operation_class=operation_class,
        )

    def is_allowed(self, key: str, operation_class: str, weight: Number = 1) -> bool:
        return self.evaluate(key, operation_class, weight).allowed

    def enforce(self, key: str, operation_class: str, weight: Number = 1) -> RateLimitDecision:
        decision = self.evaluate(key, operation_class, weight)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision)
        return decision

    def get_count(self, key: str, operation_class: str) -> Number:
        limiter = self.tier(operation_class)
        with self._lock:
            return limiter.get_count(key)

    def get_counts(self, key: str) -> Dict[str, Number]:
        """Live count for ``key`` in every tier."""
        with self._lock:
            return {name: limiter.get_count(key) for name, limiter in self._limiters.items()}

    def reset(self, key: str) -> None:
        """Clear ``key`` in every tier."""
        _check_key(key)
        with self._lock:
            for limiter in self._limiters.values():
                limiter.reset(key)

    def cleanup(self) -> int:
        with self._lock:
            return sum(limiter.cleanup() for limiter in self._limiters.values())
