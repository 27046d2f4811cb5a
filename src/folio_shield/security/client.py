"""Client identification helpers used for rate-limit keying.

Header values are caller-controlled; they are only ever used to derive
limiter keys, never to grant or deny access on their own.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping

from jose import JWTError, jwt

UNKNOWN_CLIENT = "unknown"
# Fits the stored visitor address column; longer non-IP text is discarded.
MAX_CLIENT_LENGTH = 64


def normalize_ip(value: str | None) -> str | None:
    """Return a canonical textual IP address, or None for unusable input.

    IPv4-mapped IPv6 addresses (``::ffff:10.0.0.1``) collapse to plain IPv4.
    Values that are not IP addresses at all (e.g. a test client host name)
    are returned stripped but otherwise unchanged, unless they are longer than
    ``MAX_CLIENT_LENGTH``.
    """
    if value is None:
        return None
    candidate = value.strip().strip('"')
    if not candidate:
        return None
    # "[2001:db8::1]:443" and "203.0.113.7:8080" forms
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    elif candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        pass
    else:
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        candidate = str(address)
    return candidate if len(candidate) <= MAX_CLIENT_LENGTH else None


def extract_client_ip(headers: Mapping[str, str], peer: str | None = None) -> str:
    """Derive the client address for a request.

    Precedence:
        1. first entry of ``X-Forwarded-For``
        2. ``X-Real-IP``
        3. the socket peer address

    Never raises; malformed headers fall through to the next source.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = normalize_ip(forwarded.split(",")[0])
        if first:
            return first

    real_ip = normalize_ip(headers.get("x-real-ip"))
    if real_ip:
        return real_ip

    return normalize_ip(peer) or UNKNOWN_CLIENT


def resolve_identity(headers: Mapping[str, str]) -> str | None:
    """Return the ``sub`` claim of a bearer token without verifying it.

    The value only scopes per-user limiter keys; authentication happens in
    the route handlers.
    """
    authorization = headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        claims = jwt.get_unverified_claims(token.strip())
    except JWTError:
        return None
    subject = claims.get("sub") or claims.get("id") or claims.get("userId")
    return str(subject) if subject else None
