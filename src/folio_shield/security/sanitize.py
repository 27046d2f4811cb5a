"""Input sanitization for JSON bodies, form bodies and query strings."""

from __future__ import annotations

import re
from typing import Any

# Leading "$" and any "." in a key can turn into query operators downstream.
_OPERATOR_KEY_CHARS = re.compile(r"^\$|\.")
_SCRIPT_BLOCK = re.compile(r"<\s*script\b[^>]*>.*?<\s*/\s*script\s*>", re.IGNORECASE | re.DOTALL)
_SCRIPT_OPEN = re.compile(r"<\s*script\b[^>]*>", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)

MULTI_VALUE_QUERY_PARAMS = frozenset({"sort", "filter", "page", "limit", "fields"})
REPLACEMENT = "_"


def sanitize_key(key: str) -> str:
    return _OPERATOR_KEY_CHARS.sub(REPLACEMENT, key)


def sanitize_keys(value: Any, sanitized: list[str] | None = None) -> Any:
    """Return ``value`` with operator-like mapping keys rewritten.

    Rewritten original keys are appended to ``sanitized`` when given.
    """
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            new_key = sanitize_key(key) if isinstance(key, str) else key
            if new_key != key and sanitized is not None:
                sanitized.append(key)
            cleaned[new_key] = sanitize_keys(item, sanitized)
        return cleaned
    if isinstance(value, list):
        return [sanitize_keys(item, sanitized) for item in value]
    return value


def clean_string(text: str) -> str:
    """Strip script blocks and ``javascript:`` schemes, then escape ``<``."""
    text = _SCRIPT_BLOCK.sub("", text)
    text = _SCRIPT_OPEN.sub("", text)
    text = _JS_SCHEME.sub("", text)
    return text.replace("<", "&lt;")


def strip_scripts(value: Any) -> Any:
    """Apply :func:`clean_string` to every string in a nested structure."""
    if isinstance(value, str):
        return clean_string(value)
    if isinstance(value, dict):
        return {key: strip_scripts(item) for key, item in value.items()}
    if isinstance(value, list):
        return [strip_scripts(item) for item in value]
    return value


def sanitize_payload(value: Any, sanitized: list[str] | None = None) -> Any:
    return strip_scripts(sanitize_keys(value, sanitized))


def collapse_parameters(
    pairs: list[tuple[str, str]],
    multi_value: frozenset[str] = MULTI_VALUE_QUERY_PARAMS,
) -> list[tuple[str, str]]:
    """Collapse repeated parameters to their last value.

    Parameters named in ``multi_value`` keep every occurrence. Order follows
    first appearance.
    """
    positions: dict[str, int] = {}
    result: list[tuple[str, str]] = []
    for name, value in pairs:
        if name in multi_value:
            result.append((name, value))
            continue
        if name in positions:
            result[positions[name]] = (name, value)
        else:
            positions[name] = len(result)
            result.append((name, value))
    return result


def sanitize_pairs(pairs: list[tuple[str, str]], sanitized: list[str] | None = None) -> list[tuple[str, str]]:
    """Key and value sanitization for flat name/value pairs (query or form)."""
    cleaned = []
    for name, value in collapse_parameters(pairs):
        new_name = sanitize_key(name)
        if new_name != name and sanitized is not None:
            sanitized.append(name)
        cleaned.append((new_name, clean_string(value)))
    return cleaned
