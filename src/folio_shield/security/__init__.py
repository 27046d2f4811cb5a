"""Request defense pipeline: validation, sanitization, rate limiting and headers."""
