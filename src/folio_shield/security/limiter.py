"""Named rate-limit policies and the limiter that enforces them."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from folio_shield.core.settings import Settings
from folio_shield.security.store import RateLimitStore, now_ms
from folio_shield.security.types import NO_JSON, RequestContext, SecurityRejection

KeyFunc = Callable[[RequestContext], str]
SkipFunc = Callable[[RequestContext], bool]

TIER_MESSAGES = {
    "general": "Too many requests from this IP, please try again later.",
    "burst": "Too many requests in a short period, please slow down.",
    "api": "Too many requests from this IP, please try again later.",
    "strict": "Rate limit exceeded for sensitive operations.",
    "auth": "Too many failed authentication attempts, please try again later.",
    "public": "Too many requests, please slow down.",
    "upload": "Upload limit exceeded, please try again later.",
}


# --- Key derivation ------------------------------------------------------------------
def ip_key(ctx: RequestContext) -> str:
    return ctx.client_ip


def identity_ip_key(ctx: RequestContext) -> str:
    return f"{ctx.client_ip}:{ctx.identity or 'anonymous'}"


def identity_or_ip_key(ctx: RequestContext) -> str:
    return ctx.identity or ctx.client_ip


def credential_or_ip_key(ctx: RequestContext) -> str:
    """Key login attempts on the submitted account name, else the client IP."""
    body = ctx.json_body
    if body is not NO_JSON and isinstance(body, dict):
        for field_name in ("email", "username"):
            value = body.get(field_name)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
    return ctx.client_ip


# --- Skip predicates -----------------------------------------------------------------
def never_skip(ctx: RequestContext) -> bool:
    return False


def path_matches(path: str, prefixes: Iterable[str]) -> bool:
    """Prefix match on path segments: ``/api`` matches ``/api/x`` but not ``/apix``."""
    for prefix in prefixes:
        prefix = prefix.rstrip("/") or "/"
        if prefix == "/" or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def make_skip(whitelisted_paths: Iterable[str], extra_paths: Iterable[str] = ()) -> SkipFunc:
    whitelisted = list(whitelisted_paths)
    extra = list(extra_paths)

    def _skip(ctx: RequestContext) -> bool:
        return (
            ctx.whitelisted
            or ctx.allowlisted
            or path_matches(ctx.path, whitelisted)
            or any(ctx.path.startswith(prefix) for prefix in extra)
        )

    return _skip


@dataclass
class RateLimitPolicy:
    """One limiter tier."""

    name: str
    window_seconds: int
    max_requests: int
    key_func: KeyFunc = ip_key
    skip: SkipFunc = never_skip
    message: str = "Too many requests, please try again later."
    skip_successful_requests: bool = False

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)


@dataclass
class RateLimitDecision:
    allowed: bool
    key: str
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Applies a :class:`RateLimitPolicy` against a counter store."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        store: RateLimitStore,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.policy = policy
        self.store = store
        self._clock = clock

    @property
    def name(self) -> str:
        return self.policy.name

    def key_for(self, ctx: RequestContext) -> str:
        return f"{self.policy.name}:{self.policy.key_func(ctx)}"

    async def hit(self, ctx: RequestContext) -> RateLimitDecision | None:
        """Count the request; returns None when the policy skips it."""
        if self.policy.skip(ctx):
            return None
        key = self.key_for(ctx)
        record = await self.store.record(key, self.policy.window_ms)
        allowed = record.count <= self.policy.max_requests
        return RateLimitDecision(
            allowed=allowed,
            key=key,
            limit=self.policy.max_requests,
            remaining=max(0, self.policy.max_requests - record.count),
            retry_after=record.retry_after_seconds(self._clock()),
        )

    async def release(self, key: str) -> None:
        """Give back a counted hit (used for successful auth attempts)."""
        await self.store.decrement(key)

    def reject(self, decision: RateLimitDecision) -> SecurityRejection:
        return SecurityRejection(
            status_code=429,
            error=self.policy.message,
            reason=f"rate_limit:{self.policy.name}",
            retry_after=decision.retry_after,
            headers=decision.headers(),
        )


def build_policies(config: Settings) -> dict[str, RateLimitPolicy]:
    """Construct every tier from settings."""
    tiers = config.rate_limit_tiers
    whitelisted = config.whitelisted_paths_list
    default_skip = make_skip(whitelisted)

    def _policy(name: str, key_func: KeyFunc, skip: SkipFunc = default_skip, **kwargs: Any) -> RateLimitPolicy:
        window, maximum = tiers[name]
        return RateLimitPolicy(
            name=name,
            window_seconds=window,
            max_requests=maximum,
            key_func=key_func,
            skip=skip,
            message=TIER_MESSAGES[name],
            **kwargs,
        )

    return {
        "general": _policy("general", ip_key),
        "burst": _policy("burst", ip_key),
        "api": _policy("api", ip_key),
        "strict": _policy("strict", identity_ip_key),
        "auth": _policy("auth", credential_or_ip_key, skip_successful_requests=True),
        "public": _policy("public", ip_key, skip=make_skip(whitelisted, extra_paths=("/health",))),
        "upload": _policy("upload", identity_or_ip_key),
    }
