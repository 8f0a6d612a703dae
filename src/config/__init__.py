"""
Configuration module for the feed ranking service.

Usage:
    from config import get_settings

    settings = get_settings()
    page_size = settings.feed_page_size
"""

from config.settings import Settings, get_settings, get_settings_for_testing

__all__ = ["Settings", "get_settings", "get_settings_for_testing"]
