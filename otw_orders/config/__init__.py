"""Configuration package for the OTW order service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
