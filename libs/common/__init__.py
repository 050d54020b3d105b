"""Common utilities shared across services (structured logging)."""
