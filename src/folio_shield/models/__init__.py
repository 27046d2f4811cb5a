"""SQLAlchemy models for the Folio Shield service."""

from .visitor import SESSION_ID_MAX_LENGTH, SOCKET_ID_MAX_LENGTH, Visitor

__all__ = ["SESSION_ID_MAX_LENGTH", "SOCKET_ID_MAX_LENGTH", "Visitor"]
