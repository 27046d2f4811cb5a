"""Request defense pipeline and live presence tracking for the portfolio API."""

__version__ = "1.0.0"
