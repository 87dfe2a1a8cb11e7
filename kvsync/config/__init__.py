"""Configuration module for kvsync."""

from .settings import Settings, duration_ms, settings

__all__ = ["Settings", "duration_ms", "settings"]
