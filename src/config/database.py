"""
Supabase client access for the feed service.

Every store the ranking pipeline reads or writes (candidate RPCs, feature
tables, feed cache, experiments, telemetry) goes through the single service
role client returned here. Components accept an injected client so tests can
pass a mock; production code falls back to the shared singleton.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from config.settings import get_settings


class SupabaseClientError(Exception):
    """Raised when the Supabase client cannot be created."""


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """
    Get the singleton Supabase client instance.

    Raises:
        SupabaseClientError: If the client cannot be created
    """
    try:
        settings = get_settings()
        return create_client(settings.supabase_url, settings.supabase_service_key)
    except Exception as e:
        raise SupabaseClientError(f"Failed to create Supabase client: {e}") from e


def get_supabase_client_optional() -> Optional[Client]:
    """Get the Supabase client, or None when it is not configured."""
    try:
        return get_supabase_client()
    except SupabaseClientError:
        return None


def rows(result: Any) -> List[Dict[str, Any]]:
    """Normalize a PostgREST response's ``data`` into a list of row dicts."""
    data = getattr(result, "data", None)
    if not data:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)
