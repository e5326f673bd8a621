"""Configuration package for registration payments."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
