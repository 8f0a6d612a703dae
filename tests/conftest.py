"""
Pytest configuration and shared fixtures for the feed ranking tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Unit tests never talk to a real project; settings only need to validate
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fixtures: Test Data Factories
# ============================================================================

@pytest.fixture
def now() -> datetime:
    """Fixed 'current time' used by clock-injected components."""
    return NOW


@pytest.fixture
def sample_candidate_dict() -> dict:
    """Sample candidate row as returned by the get_feed_candidates RPC."""
    return {
        "id": "post-001",
        "author_id": "author-a",
        "environment_id": None,
        "content": "Shipping our new design system today",
        "post_type": "text",
        "created_at": (NOW - timedelta(hours=2)).isoformat(),
        "likes_count": 12,
        "replies_count": 3,
        "has_media": False,
        "has_poll": False,
        "author_username": "alice",
        "author_full_name": "Alice A",
        "author_avatar_url": None,
        "author_is_verified": True,
        "author_follower_count": 250,
        "is_following": True,
        "is_fof": False,
    }


@pytest.fixture
def make_candidate(sample_candidate_dict: dict) -> Callable[..., Any]:
    """Factory for Candidate models with overrides."""
    from feed.models import Candidate

    def _make(**overrides) -> Candidate:
        data = dict(sample_candidate_dict)
        data.update(overrides)
        return Candidate.model_validate(data)

    return _make


@pytest.fixture
def sample_profile_dict() -> dict:
    """Sample user_interest_profiles row."""
    return {
        "user_id": "viewer-1",
        "topic_scores": {"design": 4.0, "ai": 3.0, "startups": 1.5},
        "content_type_preferences": {"text": 0.6, "image": 0.9},
        "creator_affinities": {"author-a": 5.0, "author-b": 1.0},
        "interaction_patterns": {"avg_dwell_ms": 4200, "peak_hours": [9, 18]},
        "computed_at": NOW.isoformat(),
    }


@pytest.fixture
def sample_profile(sample_profile_dict: dict):
    from feed.models import UserInterestProfile
    return UserInterestProfile.model_validate(sample_profile_dict)


@pytest.fixture
def make_scored() -> Callable[..., Any]:
    """
    Factory for ScoredPost with features.

    Usage:
        make_scored("p1", "author-a", 0.9, age_hours=2, has_media=True)
    """
    from feed.models import PostFeatureVector, ScoredPost

    def _make(
        post_id: str,
        author_id: str = "author-a",
        score: float = 0.5,
        age_hours: float = 1.0,
        has_media: bool = False,
        has_poll: bool = False,
        follower_count_normalized: float = 0.5,
        freshness: float = 0.5,
    ) -> ScoredPost:
        features = PostFeatureVector(
            post_id=post_id,
            author_id=author_id,
            age_hours=age_hours,
            has_media=has_media,
            has_poll=has_poll,
            follower_count_normalized=follower_count_normalized,
            freshness=freshness,
        )
        return ScoredPost(
            post_id=post_id,
            author_id=author_id,
            score=score,
            tier1_score=score,
            features=features,
        )

    return _make


# ============================================================================
# Fixtures: Mock Services
# ============================================================================

QUERY_METHODS = (
    "select", "eq", "neq", "gt", "gte", "lt", "lte", "in_", "is_", "order",
    "limit", "range", "insert", "upsert", "update", "delete",
)


def make_query(data: Any = None, error: Optional[Exception] = None) -> MagicMock:
    """
    A chainable PostgREST query double.

    Every builder method returns the same mock, so any chain ends in
    ``execute()``, which returns ``data`` (or raises ``error``).
    """
    query = MagicMock()
    for method in QUERY_METHODS:
        getattr(query, method).return_value = query
    query.not_ = query
    if error is not None:
        query.execute.side_effect = error
    else:
        query.execute.return_value = MagicMock(data=data)
    return query


class FakeSupabase:
    """
    Supabase client double with per-table and per-RPC responses.

    Tables/RPCs that were not configured return no rows.
    """

    def __init__(
        self,
        tables: Optional[Dict[str, Any]] = None,
        rpcs: Optional[Dict[str, Any]] = None,
    ):
        self.queries: Dict[str, MagicMock] = {}
        self.rpc_calls: Dict[str, MagicMock] = {}
        self.table = MagicMock(side_effect=self._table)
        self.rpc = MagicMock(side_effect=self._rpc)
        for name, value in (tables or {}).items():
            self.set_table(name, value)
        for name, value in (rpcs or {}).items():
            self.set_rpc(name, value)

    def set_table(self, name: str, value: Any) -> MagicMock:
        if isinstance(value, Exception):
            self.queries[name] = make_query(error=value)
        else:
            self.queries[name] = make_query(data=value)
        return self.queries[name]

    def set_rpc(self, name: str, value: Any) -> MagicMock:
        if isinstance(value, Exception):
            self.rpc_calls[name] = make_query(error=value)
        else:
            self.rpc_calls[name] = make_query(data=value)
        return self.rpc_calls[name]

    def _table(self, name: str) -> MagicMock:
        if name not in self.queries:
            self.queries[name] = make_query(data=[])
        return self.queries[name]

    def _rpc(self, name: str, params: Optional[dict] = None) -> MagicMock:
        if name not in self.rpc_calls:
            self.rpc_calls[name] = make_query(data=[])
        return self.rpc_calls[name]


@pytest.fixture
def make_supabase() -> Callable[..., FakeSupabase]:
    """Factory fixture: ``make_supabase(tables={...}, rpcs={...})``."""
    return FakeSupabase


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    """Supabase double where every table and RPC is empty."""
    return FakeSupabase()


# ============================================================================
# Fixtures: FastAPI Test Client
# ============================================================================

@pytest.fixture
def app():
    """A fresh FastAPI application; dependency overrides are per test."""
    from api.app import create_app
    return create_app()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# Markers auto-use
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "supabase: marks tests that require Supabase")


# ============================================================================
# JWT Token Generation
# ============================================================================

def generate_test_jwt(
    user_id: str = "test-user-001",
    exp_hours: int = 24,
    app_metadata: Optional[dict] = None,
) -> str:
    """
    Generate a test JWT token signed with SUPABASE_JWT_SECRET.

    Args:
        user_id: The user ID to include in the token
        exp_hours: Hours until token expires (default 24, negative = expired)
        app_metadata: Optional app claims, e.g. ``{"role": "admin"}``

    Returns:
        JWT token string
    """
    import jwt
    import time

    jwt_secret = os.getenv("SUPABASE_JWT_SECRET")
    if not jwt_secret:
        raise ValueError("SUPABASE_JWT_SECRET environment variable required")

    now = int(time.time())
    payload = {
        "sub": user_id,
        "aud": "authenticated",
        "role": "authenticated",
        "email": f"{user_id}@test.com",
        "aal": "aal1",
        "exp": now + (exp_hours * 3600),
        "iat": now,
        "is_anonymous": False,
    }
    if app_metadata is not None:
        payload["app_metadata"] = app_metadata

    return jwt.encode(payload, jwt_secret, algorithm="HS256")


@pytest.fixture
def test_jwt_token() -> str:
    """Fixture providing a valid test JWT token."""
    return generate_test_jwt()


@pytest.fixture
def auth_headers(test_jwt_token: str) -> dict:
    """Fixture providing auth headers with Bearer token."""
    return {"Authorization": f"Bearer {test_jwt_token}"}


@pytest.fixture
def admin_headers() -> dict:
    """Auth headers for a user carrying the admin app role."""
    token = generate_test_jwt("admin-user", app_metadata={"role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def expired_headers() -> dict:
    """Auth headers carrying a token that expired an hour ago."""
    return {"Authorization": f"Bearer {generate_test_jwt(exp_hours=-1)}"}


# ============================================================================
# Skip conditions
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests if no server URL is configured."""
    skip_integration = pytest.mark.skip(reason="Integration tests require running server")

    server_url = os.getenv("TEST_SERVER_URL")

    for item in items:
        if "integration" in item.keywords and not server_url:
            item.add_marker(skip_integration)
