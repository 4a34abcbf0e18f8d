"""Configuration package for the commission engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
