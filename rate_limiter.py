"""
In-process sliding-window rate limiting for the Cosmic Quirks API.

The limiter keeps, per identity, the timestamps of recently allowed requests.
It is not persisted: a restart forgets every window.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from core.config import logger


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool
    prediction: RateLimitRule
    api: RateLimitRule
    auth: RateLimitRule
    max_cache_entries: int = 10000
    trusted_proxy_count: int = 1
    sweep_interval_seconds: int = 600
    idle_seconds: int = 3600

    def validate(self) -> None:
        """Validate limiter settings, raising with every problem found."""
        errors = []
        for name in ("prediction", "api", "auth"):
            rule = getattr(self, name)
            prefix = f"RATE_LIMIT_{name.upper()}"
            if rule.limit < 0:
                errors.append(f"{prefix}_PER_WINDOW must be >= 0")
            if rule.window_seconds <= 0:
                errors.append(f"{prefix}_WINDOW_SECONDS must be > 0")
        if self.max_cache_entries < 1:
            errors.append("RATE_LIMIT_MAX_CACHE_ENTRIES must be >= 1")
        if self.trusted_proxy_count < 0:
            errors.append("TRUSTED_PROXY_COUNT must be >= 0")
        if self.idle_seconds <= 0:
            errors.append("RATE_LIMIT_IDLE_SECONDS must be > 0")
        if errors:
            raise RuntimeError("Rate limit configuration invalid: " + "; ".join(errors))


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_rate_limit_config_from_env() -> RateLimitConfig:
    enabled = _env_bool("RATE_LIMIT_ENABLED", True) and not _env_bool("SKIP_RATE_LIMITS", False)
    return RateLimitConfig(
        enabled=enabled,
        prediction=RateLimitRule(
            limit=_env_int("RATE_LIMIT_PREDICTION_PER_WINDOW", 3),
            window_seconds=_env_int("RATE_LIMIT_PREDICTION_WINDOW_SECONDS", 60),
        ),
        api=RateLimitRule(
            limit=_env_int("RATE_LIMIT_API_PER_WINDOW", 30),
            window_seconds=_env_int("RATE_LIMIT_API_WINDOW_SECONDS", 60),
        ),
        auth=RateLimitRule(
            limit=_env_int("RATE_LIMIT_AUTH_PER_WINDOW", 10),
            window_seconds=_env_int("RATE_LIMIT_AUTH_WINDOW_SECONDS", 900),
        ),
        max_cache_entries=_env_int("RATE_LIMIT_MAX_CACHE_ENTRIES", 10000),
        trusted_proxy_count=_env_int("TRUSTED_PROXY_COUNT", 1),
        sweep_interval_seconds=_env_int("RATE_LIMIT_SWEEP_SECONDS", 600),
        idle_seconds=_env_int("RATE_LIMIT_IDLE_SECONDS", 3600),
    )


class InMemoryRateLimiter:
    """Sliding-window log limiter keyed by an arbitrary identity string."""

    def __init__(
        self,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self._clock = clock
        self._requests: dict[str, deque] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._requests)

    def check(self, identity: str, window_seconds: float, max_requests: int) -> bool:
        """Return True and record the request if the identity is under its limit."""
        now = self._clock()
        window_start = now - window_seconds
        with self._lock:
            timestamps = self._requests.get(identity)
            if timestamps is None:
                timestamps = deque()
            while timestamps and timestamps[0] <= window_start:
                timestamps.popleft()

            if len(timestamps) >= max_requests:
                self._requests[identity] = timestamps
                return False

            timestamps.append(now)
            self._requests[identity] = timestamps
            if len(self._requests) > self.max_entries:
                self._evict_locked(now)
            return True

    def sweep(self, idle_seconds: float = 3600) -> int:
        """Drop identities with no requests inside the idle window."""
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now, idle_seconds)

    def _sweep_locked(self, now: float, idle_seconds: float) -> int:
        cutoff = now - idle_seconds
        stale = [
            identity
            for identity, timestamps in self._requests.items()
            if not timestamps or timestamps[-1] <= cutoff
        ]
        for identity in stale:
            del self._requests[identity]
        return len(stale)

    def _evict_locked(self, now: float) -> None:
        self._sweep_locked(now, 3600)
        overflow = len(self._requests) - self.max_entries
        if overflow <= 0:
            return
        # oldest activity first
        by_last_seen = sorted(
            self._requests.items(),
            key=lambda item: item[1][-1] if item[1] else float("-inf"),
        )
        for identity, _ in by_last_seen[:overflow]:
            del self._requests[identity]

    async def close(self) -> None:
        with self._lock:
            self._requests.clear()


def build_rate_limiter_from_env(config: Optional[RateLimitConfig] = None) -> InMemoryRateLimiter:
    config = config or load_rate_limit_config_from_env()
    return InMemoryRateLimiter(max_entries=config.max_cache_entries)


async def sweep_loop(limiter: InMemoryRateLimiter, config: RateLimitConfig) -> None:
    if config.sweep_interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(config.sweep_interval_seconds)
        try:
            removed = limiter.sweep(config.idle_seconds)
            if removed:
                logger.debug("rate_limiter_sweep", extra={"removed": removed})
        except Exception as exc:
            logger.warning(f"Rate limiter sweep error: {exc}")


def get_client_ip(request: Request, trusted_proxy_count: int = 1) -> str:
    """Resolve the caller's address, trusting forwarding headers only behind proxies."""
    if trusted_proxy_count > 0:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
            if hops:
                index = max(len(hops) - 1 - trusted_proxy_count, 0)
                return hops[index]
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _select_rule(request: Request, config: RateLimitConfig) -> tuple[Optional[str], Optional[RateLimitRule]]:
    path = request.url.path.rstrip("/") or "/"
    if request.method == "POST" and path == "/api/prediction":
        return "prediction", config.prediction
    if path.startswith("/auth"):
        return "auth", config.auth
    if path.startswith("/api/"):
        return "api", config.api
    return None, None


def rate_limit_response(identifier: str, retry_after: int) -> JSONResponse:
    return JSONResponse(
        {
            "error": "Too many cosmic requests",
            "message": "The mystical energies are overwhelmed! Please slow down and try again in a moment.",
            "code": "RATE_LIMIT_EXCEEDED",
        },
        status_code=429,
        headers={
            "X-RateLimit-Identifier": identifier,
            "Retry-After": str(retry_after),
        },
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: InMemoryRateLimiter, config: RateLimitConfig):
        super().__init__(app)
        self.limiter = limiter
        self.config = config

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        rule_name, rule = _select_rule(request, self.config)
        if rule is None:
            return await call_next(request)

        client_ip = get_client_ip(request, self.config.trusted_proxy_count)
        allowed = self.limiter.check(f"{rule_name}:{client_ip}", rule.window_seconds, rule.limit)
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                extra={"rule": rule_name, "client_ip": client_ip},
            )
            return rate_limit_response(client_ip, rule.window_seconds)
        return await call_next(request)
