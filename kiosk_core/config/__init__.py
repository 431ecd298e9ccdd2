"""Configuration package for the kiosk core."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
