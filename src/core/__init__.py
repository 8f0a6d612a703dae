"""
Core module for cross-cutting concerns.

This module provides:
- Structured logging configuration
- Request tracing middleware
- Authentication utilities
- Common utilities
"""

from core.logging import configure_logging, get_logger
from core.auth import require_auth, require_admin, get_current_user, SupabaseUser
from core.utils import clamp, parse_timestamp, utc_now

__all__ = [
    "configure_logging",
    "get_logger",
    "require_auth",
    "require_admin",
    "get_current_user",
    "SupabaseUser",
    "clamp",
    "parse_timestamp",
    "utc_now",
]
