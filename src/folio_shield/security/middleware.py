"""ASGI middleware that runs the security pipeline around every HTTP request."""

from __future__ import annotations

import json
import logging
import time
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from folio_shield.security.client import extract_client_ip, resolve_identity
from folio_shield.security.headers import apply_security_headers
from folio_shield.security.pipeline import SecurityPipeline
from folio_shield.security.types import NO_JSON, RequestContext
from folio_shield.security.validation import MUTATING_METHODS

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("folio_shield.access")


async def _read_body(receive: Receive, limit: int | None) -> tuple[bytes, bool]:
    """Drain the request body; stops early once ``limit`` bytes are exceeded."""
    chunks: list[bytes] = []
    size = 0
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if limit is not None and size > limit:
            return b"", True
        chunks.append(chunk)
        more_body = message.get("more_body", False)
    return b"".join(chunks), False


def _content_length(headers: Headers) -> int | None:
    value = headers.get("content-length")
    if value is None:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        return None


def build_context(scope: Scope) -> RequestContext:
    headers = Headers(scope=scope)
    query_string = scope.get("query_string", b"").decode("latin-1")
    raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
    raw_url = raw_path.decode("latin-1") + (f"?{query_string}" if query_string else "")
    client = scope.get("client")
    return RequestContext(
        method=scope["method"].upper(),
        path=scope["path"],
        raw_url=raw_url,
        headers=headers,
        client_ip=extract_client_ip(headers, client[0] if client else None),
        query=parse_qsl(query_string, keep_blank_values=True),
        identity=resolve_identity(headers),
        content_length=_content_length(headers),
        chunked="chunked" in (headers.get("transfer-encoding") or "").lower(),
    )


class SecurityMiddleware:
    """Pure ASGI middleware so the (possibly sanitized) body can be replayed."""

    def __init__(self, app: ASGIApp, pipeline: SecurityPipeline, max_body_bytes: int = 10 * 1024 * 1024) -> None:
        self.app = app
        self.pipeline = pipeline
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        ctx = build_context(scope)
        buffered = ctx.method in MUTATING_METHODS | {"DELETE"} and (ctx.is_json or ctx.is_form)
        if buffered:
            limit = self.max_body_bytes if ctx.is_json else None
            if ctx.is_json and (ctx.content_length or 0) > self.max_body_bytes:
                ctx.body_too_large = True
            else:
                ctx.body, ctx.body_too_large = await _read_body(receive, limit)
            self._decode_body(ctx)

        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = MutableHeaders(scope=message)
                apply_security_headers(headers)
                for name, value in ctx.rate_limit_headers.items():
                    if name not in headers:
                        headers[name] = value
            await send(message)

        rejection = await self.pipeline.run(ctx)
        if rejection is not None:
            response = JSONResponse(rejection.body(), status_code=rejection.status_code, headers=rejection.headers)
            await response(scope, receive, send_wrapper)
            self._log_access(ctx, rejection.status_code, started)
            return

        if buffered:
            scope, receive = self._replay(scope, receive, ctx)
        elif ctx.query_modified:
            scope = dict(scope)
            scope["query_string"] = urlencode(ctx.query).encode("latin-1")

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self._log_access(ctx, status_code, started)
            await self.pipeline.after_response(ctx, status_code)

    @staticmethod
    def _decode_body(ctx: RequestContext) -> None:
        if not ctx.body or ctx.body_too_large:
            return
        if ctx.is_json:
            try:
                ctx.json_body = json.loads(ctx.body)
            except ValueError:
                ctx.json_body = NO_JSON
        elif ctx.is_form:
            ctx.form_body = parse_qsl(ctx.body.decode("utf-8", errors="replace"), keep_blank_values=True)

    @staticmethod
    def _replay(scope: Scope, receive: Receive, ctx: RequestContext) -> tuple[Scope, Receive]:
        body = ctx.body
        scope = dict(scope)
        if ctx.body_modified:
            if ctx.json_body is not NO_JSON:
                body = json.dumps(ctx.json_body, separators=(",", ":")).encode("utf-8")
            elif ctx.form_body is not None:
                body = urlencode(ctx.form_body).encode("utf-8")
            scope["headers"] = [
                (name, value) for name, value in scope["headers"] if name.lower() != b"content-length"
            ] + [(b"content-length", str(len(body)).encode("latin-1"))]
        if ctx.query_modified:
            scope["query_string"] = urlencode(ctx.query).encode("latin-1")

        body_sent = False

        async def replay_receive() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return scope, replay_receive

    def _log_access(self, ctx: RequestContext, status_code: int, started: float) -> None:
        if ctx.whitelisted:
            return
        duration_ms = (time.perf_counter() - started) * 1000.0
        access_logger.info(
            "HTTP %s %s %d %.1fms",
            ctx.method,
            ctx.path,
            status_code,
            duration_ms,
            extra={
                "ip": ctx.client_ip,
                "path": ctx.path,
                "method": ctx.method,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 1),
            },
        )
