"""Value types passed between the middleware and its stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from starlette.datastructures import Headers

# Sentinel for "body was not JSON or not read".
NO_JSON = object()


@dataclass
class SecurityRejection:
    """Short-circuit result of a stage; rendered as a small JSON error."""

    status_code: int
    error: str
    reason: str
    retry_after: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # Counts toward a temporary ban of the client.
    strike: bool = False

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error}
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


@dataclass
class RequestContext:
    """Mutable view of one inbound request as seen by the security stages."""

    method: str
    path: str
    raw_url: str
    headers: Headers
    client_ip: str
    query: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    json_body: Any = NO_JSON
    form_body: list[tuple[str, str]] | None = None
    identity: str | None = None
    content_length: int | None = None
    chunked: bool = False
    body_too_large: bool = False
    whitelisted: bool = False
    allowlisted: bool = False
    body_modified: bool = False
    query_modified: bool = False
    # Filled by the rate-limit stage for response headers and post-response hooks.
    rate_limit_headers: dict[str, str] = field(default_factory=dict)
    counted_keys: list[tuple[Any, str]] = field(default_factory=list)

    @property
    def has_body(self) -> bool:
        return bool(self.body) or self.chunked or bool(self.content_length)

    @property
    def content_type(self) -> str:
        return (self.headers.get("content-type") or "").split(";", 1)[0].strip().lower()

    @property
    def is_json(self) -> bool:
        return self.content_type == "application/json" or self.content_type.endswith("+json")

    @property
    def is_form(self) -> bool:
        return self.content_type == "application/x-www-form-urlencoded"
