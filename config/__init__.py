"""Configuration package for the SwiftLoan payments service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
