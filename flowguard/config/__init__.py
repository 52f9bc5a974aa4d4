"""Configuration management."""

from flowguard.config.settings import Environment, IdempotencyBackend, Settings, get_settings

__all__ = ["Environment", "IdempotencyBackend", "Settings", "get_settings"]
