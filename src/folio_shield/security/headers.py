"""Response hardening headers."""

from __future__ import annotations

from collections.abc import MutableMapping

CSP_DIRECTIVES: dict[str, list[str]] = {
    "default-src": ["'self'"],
    "script-src": ["'self'"],
    "style-src": ["'self'"],
    "img-src": ["'self'", "data:", "https:"],
    "media-src": ["'self'", "https:", "blob:"],
    "font-src": ["'self'", "https:", "data:"],
    "connect-src": ["'self'", "https:", "wss:"],
    "object-src": ["'none'"],
    "frame-src": ["'none'"],
    "frame-ancestors": ["'none'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
}

HSTS_MAX_AGE_SECONDS = 31_536_000


def build_csp(directives: dict[str, list[str]] = CSP_DIRECTIVES) -> str:
    parts = [f"{name} {' '.join(sources)}" for name, sources in directives.items()]
    parts.append("upgrade-insecure-requests")
    return "; ".join(parts)


SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Content-Security-Policy": build_csp(),
    "Strict-Transport-Security": f"max-age={HSTS_MAX_AGE_SECONDS}; includeSubDomains; preload",
}

# Headers that advertise the serving stack.
DISCLOSING_HEADERS = ("server", "x-powered-by")


def apply_security_headers(headers: MutableMapping[str, str]) -> None:
    """Set hardening headers and drop technology-disclosing ones in place."""
    for name in DISCLOSING_HEADERS:
        if name in headers:
            del headers[name]
    for name, value in SECURITY_HEADERS.items():
        headers[name] = value
