"""URL and request-shape validation."""

from __future__ import annotations

import re
from urllib.parse import unquote

ATTACK_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("script_tag", re.compile(r"<\s*/?\s*script\b", re.IGNORECASE)),
    ("javascript_scheme", re.compile(r"javascript\s*:", re.IGNORECASE)),
    ("event_handler", re.compile(r"[\s\"'/]on[a-z]+\s*=", re.IGNORECASE)),
    ("path_traversal", re.compile(r"(?:\.\./|\.\.\\)")),
    ("null_byte", re.compile(r"\x00")),
)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})


def find_attack_signature(url: str) -> str | None:
    """Return the name of the first attack pattern found in ``url``.

    The URL is checked both raw and after up to two rounds of percent-decoding
    so double-encoded payloads are caught.
    """
    candidates = [url]
    decoded = url
    for _ in range(2):
        decoded_next = unquote(decoded)
        if decoded_next == decoded:
            break
        decoded = decoded_next
        candidates.append(decoded)
    for candidate in candidates:
        for name, pattern in ATTACK_PATTERNS:
            if pattern.search(candidate):
                return name
    return None


def url_too_long(url: str, max_length: int) -> bool:
    return len(url) > max_length


def requires_content_type(method: str, has_body: bool) -> bool:
    """Mutating requests carrying a body must declare what it is."""
    return method.upper() in MUTATING_METHODS and has_body
