"""Configuration package for the donation ledger service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
