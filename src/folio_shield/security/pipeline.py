"""Request defense pipeline.

The pipeline is an ordered list of stages built once at startup. Each stage
inspects (and may rewrite) a :class:`RequestContext` and either lets the
request continue or returns a :class:`SecurityRejection`. The first rejection
short-circuits the pipeline; the request never reaches the route handlers.

Mutable limiter state lives in :class:`SecurityState` so it can be injected,
reset between tests, and swept by the maintenance worker.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from folio_shield.core.logging import log_security_event
from folio_shield.core.settings import Settings
from folio_shield.security import sanitize, validation
from folio_shield.security.client import UNKNOWN_CLIENT, normalize_ip
from folio_shield.security.limiter import RateLimiter, build_policies, path_matches
from folio_shield.security.store import (
    FallbackRateLimitStore,
    MemoryRateLimitStore,
    RedisRateLimitStore,
)
from folio_shield.security.suspicion import SuspiciousActivityDetector, TemporaryBanList
from folio_shield.security.types import NO_JSON, RequestContext, SecurityRejection

logger = logging.getLogger(__name__)


class SecurityState:
    """Owns the counters shared by the stages of one pipeline."""

    def __init__(
        self,
        store: FallbackRateLimitStore,
        detector: SuspiciousActivityDetector,
        bans: TemporaryBanList | None = None,
    ) -> None:
        self.store = store
        self.detector = detector
        self.bans = bans

    @classmethod
    def from_settings(cls, config: Settings) -> SecurityState:
        shared = RedisRateLimitStore.from_url(config.redis_url) if config.redis_url else None
        if shared is None:
            logger.info("REDIS_URL not set; rate limits use process-local counters")
        store = FallbackRateLimitStore(
            shared,
            MemoryRateLimitStore(),
            step_ms=config.redis_reconnect_step_ms,
            max_delay_ms=config.redis_reconnect_max_delay_ms,
            max_attempts=config.redis_reconnect_max_attempts,
        )
        detector = SuspiciousActivityDetector(
            threshold=config.suspicious_threshold,
            window_seconds=config.suspicious_window_seconds,
        )
        bans = None
        if config.ip_ban_enabled:
            bans = TemporaryBanList(
                strikes=config.ip_ban_strikes,
                strike_window_seconds=config.ip_ban_strike_window_seconds,
                ban_seconds=config.ip_ban_duration_seconds,
            )
        return cls(store, detector, bans)

    async def cleanup(self) -> dict[str, int]:
        """Evict expired local windows, idle suspicion keys and lapsed bans."""
        return {
            "rate_limit_windows": await self.store.cleanup(),
            "suspicion_keys": self.detector.evict_idle(),
            "bans": self.bans.evict_expired() if self.bans is not None else 0,
        }

    async def reset(self) -> None:
        await self.store.reset()
        self.detector.reset()
        if self.bans is not None:
            self.bans.reset()

    async def close(self) -> None:
        await self.store.close()


# --- Stages --------------------------------------------------------------------------
class SecurityStage:
    """Base stage; subclasses override :meth:`process` and optionally :meth:`on_response`."""

    name = "stage"
    # Whitelisted operational paths bypass stages that set this to False.
    applies_to_whitelisted = True

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        return None

    async def on_response(self, ctx: RequestContext, status_code: int) -> None:
        return None


class UrlValidationStage(SecurityStage):
    name = "url_validation"

    def __init__(self, max_length: int = 2048) -> None:
        self.max_length = max_length

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        if validation.url_too_long(ctx.raw_url, self.max_length):
            return SecurityRejection(414, "URI too long", "url_too_long")
        signature = validation.find_attack_signature(ctx.raw_url)
        if signature is not None:
            return SecurityRejection(
                400,
                "Malicious request pattern detected",
                f"attack_signature:{signature}",
                strike=True,
            )
        return None


class ContentValidationStage(SecurityStage):
    name = "content_validation"

    def __init__(self, max_json_bytes: int = 10 * 1024 * 1024) -> None:
        self.max_json_bytes = max_json_bytes

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        if validation.requires_content_type(ctx.method, ctx.has_body) and not ctx.content_type:
            return SecurityRejection(400, "Content-Type header is required", "missing_content_type")
        if ctx.is_json:
            declared = ctx.content_length or 0
            if ctx.body_too_large or declared > self.max_json_bytes or len(ctx.body) > self.max_json_bytes:
                return SecurityRejection(413, "Payload too large", "payload_too_large")
        return None


class BlocklistStage(SecurityStage):
    """Denies configured addresses permanently and banned addresses until the ban lapses."""

    name = "ip_blocklist"
    applies_to_whitelisted = False

    def __init__(self, blocked: Iterable[str], bans: TemporaryBanList | None = None) -> None:
        self.blocked = {normalize_ip(ip) for ip in blocked} - {None}
        self.bans = bans

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        if ctx.client_ip in self.blocked:
            return SecurityRejection(403, "Access denied", "blocked_ip")
        if self.bans is not None and not ctx.allowlisted:
            retry_after = self.bans.retry_after(ctx.client_ip)
            if retry_after is not None:
                return SecurityRejection(
                    403,
                    "Access denied",
                    "temporary_ban",
                    retry_after=retry_after,
                    headers={"Retry-After": str(retry_after)},
                )
        return None


class SanitizationStage(SecurityStage):
    name = "sanitization"

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        sanitized_keys: list[str] = []

        if ctx.json_body is not NO_JSON:
            cleaned = sanitize.sanitize_payload(ctx.json_body, sanitized_keys)
            if cleaned != ctx.json_body:
                ctx.json_body = cleaned
                ctx.body_modified = True

        if ctx.form_body is not None:
            cleaned_form = sanitize.sanitize_pairs(ctx.form_body, sanitized_keys)
            if cleaned_form != ctx.form_body:
                ctx.form_body = cleaned_form
                ctx.body_modified = True

        if ctx.query:
            cleaned_query = sanitize.sanitize_pairs(ctx.query, sanitized_keys)
            if cleaned_query != ctx.query:
                ctx.query = cleaned_query
                ctx.query_modified = True

        if sanitized_keys:
            logger.warning(
                "Sanitized keys %s in request from %s",
                ", ".join(sanitized_keys),
                ctx.client_ip,
                extra={"ip": ctx.client_ip, "path": ctx.path, "keys": sanitized_keys},
            )
        return None


class RateLimitStage(SecurityStage):
    """Burst tier for every request plus exactly one route tier.

    The route tier is the first rule whose prefixes match the path; ``/api``
    paths fall back to ``api_limiter`` and everything else to ``default_limiter``.
    """

    name = "rate_limit"
    applies_to_whitelisted = False

    def __init__(
        self,
        burst_limiter: RateLimiter | None,
        route_rules: Sequence[tuple[Sequence[str], RateLimiter]],
        api_limiter: RateLimiter,
        default_limiter: RateLimiter,
    ) -> None:
        self.burst_limiter = burst_limiter
        self.route_rules = list(route_rules)
        self.api_limiter = api_limiter
        self.default_limiter = default_limiter

    def select(self, ctx: RequestContext) -> RateLimiter:
        for prefixes, limiter in self.route_rules:
            if path_matches(ctx.path, prefixes):
                return limiter
        if path_matches(ctx.path, ("/api",)):
            return self.api_limiter
        return self.default_limiter

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        limiters = [self.select(ctx)]
        if self.burst_limiter is not None:
            limiters.insert(0, self.burst_limiter)
        for limiter in limiters:
            decision = await limiter.hit(ctx)
            if decision is None:
                continue
            ctx.counted_keys.append((limiter, decision.key))
            ctx.rate_limit_headers = decision.headers()
            if not decision.allowed:
                return limiter.reject(decision)
        return None

    async def on_response(self, ctx: RequestContext, status_code: int) -> None:
        if status_code >= 400:
            return
        for limiter, key in ctx.counted_keys:
            if limiter.policy.skip_successful_requests:
                await limiter.release(key)


class SuspiciousActivityStage(SecurityStage):
    name = "suspicious_activity"
    applies_to_whitelisted = False

    def __init__(self, detector: SuspiciousActivityDetector) -> None:
        self.detector = detector

    async def process(self, ctx: RequestContext) -> SecurityRejection | None:
        if ctx.allowlisted:
            return None
        if self.detector.check(ctx.client_ip):
            return SecurityRejection(
                429,
                "Suspicious activity detected. Please slow down.",
                "suspicious_activity",
                retry_after=int(self.detector.window_seconds),
                headers={"Retry-After": str(int(self.detector.window_seconds))},
                strike=True,
            )
        return None


# --- Pipeline ------------------------------------------------------------------------
class SecurityPipeline:
    """Runs stages in order and logs exactly one event per rejection."""

    def __init__(
        self,
        stages: Sequence[SecurityStage],
        *,
        state: SecurityState | None = None,
        whitelisted_paths: Iterable[str] = (),
        allowlist: Iterable[str] = (),
    ) -> None:
        self.stages = list(stages)
        self.state = state
        self.whitelisted_paths = list(whitelisted_paths)
        self.allowlist = {normalize_ip(ip) for ip in allowlist} - {None}

    def classify(self, ctx: RequestContext) -> None:
        ctx.whitelisted = path_matches(ctx.path, self.whitelisted_paths)
        ctx.allowlisted = ctx.client_ip in self.allowlist

    def is_whitelisted_path(self, path: str) -> bool:
        return path_matches(path, self.whitelisted_paths)

    async def run(self, ctx: RequestContext) -> SecurityRejection | None:
        self.classify(ctx)
        for stage in self.stages:
            if ctx.whitelisted and not stage.applies_to_whitelisted:
                continue
            try:
                rejection = await stage.process(ctx)
            except Exception:
                # A broken stage must not take the API down with it.
                logger.exception("Security stage %s failed; continuing", stage.name)
                continue
            if rejection is not None:
                log_security_event(
                    rejection.reason,
                    ctx.client_ip,
                    ctx.path,
                    method=ctx.method,
                    stage=stage.name,
                    status_code=rejection.status_code,
                )
                if rejection.strike:
                    self.record_strike(ctx, rejection)
                return rejection
        return None

    def record_strike(self, ctx: RequestContext, rejection: SecurityRejection) -> None:
        bans = self.state.bans if self.state is not None else None
        if bans is None or ctx.allowlisted or ctx.client_ip == UNKNOWN_CLIENT:
            return
        ban = bans.strike(ctx.client_ip, rejection.reason)
        if ban is not None:
            logger.warning(
                "Temporarily banned %s for %d seconds after repeated %s",
                ctx.client_ip,
                int(bans.ban_seconds),
                rejection.reason,
                extra={"ip": ctx.client_ip, "path": ctx.path, "reason": "temporary_ban"},
            )

    async def after_response(self, ctx: RequestContext, status_code: int) -> None:
        for stage in self.stages:
            try:
                await stage.on_response(ctx, status_code)
            except Exception:
                logger.exception("Security stage %s response hook failed", stage.name)


def build_pipeline(config: Settings, state: SecurityState | None = None) -> SecurityPipeline:
    """Assemble the ordered stage list from settings."""
    state = state or SecurityState.from_settings(config)
    policies = build_policies(config)
    limiters = {name: RateLimiter(policy, state.store) for name, policy in policies.items()}

    stages: list[SecurityStage] = [
        UrlValidationStage(config.max_url_length),
        ContentValidationStage(config.max_json_body_bytes),
        SanitizationStage(),
        BlocklistStage(config.ip_blocklist_list, state.bans),
        RateLimitStage(
            burst_limiter=limiters["burst"],
            route_rules=[
                (config.auth_paths_list, limiters["auth"]),
                (config.upload_paths_list, limiters["upload"]),
                (config.strict_paths_list, limiters["strict"]),
                (config.public_paths_list, limiters["public"]),
            ],
            api_limiter=limiters["api"],
            default_limiter=limiters["general"],
        ),
        SuspiciousActivityStage(state.detector),
    ]

    logger.info(
        "Security pipeline ready: %s",
        ", ".join(stage.name for stage in stages),
    )
    for name, policy in policies.items():
        logger.info(
            "Rate limit %s: %d requests per %d seconds",
            name,
            policy.max_requests,
            policy.window_seconds,
        )

    return SecurityPipeline(
        stages,
        state=state,
        whitelisted_paths=config.whitelisted_paths_list,
        allowlist=config.ip_allowlist_list,
    )
