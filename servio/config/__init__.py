# Configuration package
"""
Configuration package for Servio
Exports settings from settings.py for easy import
"""
from .settings import settings, validate_settings

__all__ = ["settings", "validate_settings"]
