"""Configuration package for the payment-event core."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
