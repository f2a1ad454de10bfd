"""Pytest configuration and fixtures for integration sync tests.

Test isolation strategy:
- Every test gets a fresh in-memory Supabase fake (no network, no database)
- ENCRYPTION_MASTER_KEY and provider OAuth credentials are set per test via monkeypatch
- Module-level singletons (encryption service, rate limiters, analytics cache) are reset around each test
"""

import sys
import uuid
from pathlib import Path

# Add api/ to sys.path for importing top-level packages (e.g., integrations)
_api_root = Path(__file__).parent.parent
if str(_api_root) not in sys.path:
    sys.path.insert(0, str(_api_root))

import pytest

from fake_supabase import FakeSupabase
from integrations.core import rate_limit
from services import analytics
from integrations.core.encryption import EncryptionService, reset_encryption_service
from integrations.core.tokens import TokenManager

TEST_MASTER_KEY = "test-master-key-0123456789abcdef0123456789abcdef"
TEST_JWT_SECRET = "test-jwt-secret-with-at-least-thirty-two-bytes"

OAUTH_ENV = {
    "GITHUB_CLIENT_ID": "gh-client",
    "GITHUB_CLIENT_SECRET": "gh-secret",
    "NOTION_CLIENT_ID": "notion-client",
    "NOTION_CLIENT_SECRET": "notion-secret",
    "SLACK_CLIENT_ID": "slack-client",
    "SLACK_CLIENT_SECRET": "slack-secret",
    "GOOGLE_CLIENT_ID": "google-client",
    "GOOGLE_CLIENT_SECRET": "google-secret",
    "API_BASE_URL": "https://api.example.com",
    "FRONTEND_URL": "https://app.example.com",
}


@pytest.fixture(autouse=True)
def master_key(monkeypatch):
    """Provide the master key and JWT secret; drop cached singletons around each test."""
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", TEST_MASTER_KEY)
    monkeypatch.setenv("SUPABASE_JWT_SECRET", TEST_JWT_SECRET)
    reset_encryption_service()
    rate_limit._limiters.clear()
    analytics._analytics_cache = None
    yield TEST_MASTER_KEY
    reset_encryption_service()
    rate_limit._limiters.clear()
    analytics._analytics_cache = None


@pytest.fixture
def oauth_env(monkeypatch):
    for key, value in OAUTH_ENV.items():
        monkeypatch.setenv(key, value)
    return OAUTH_ENV


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(TEST_MASTER_KEY)


@pytest.fixture
def token_manager(db, encryption) -> TokenManager:
    return TokenManager(db, encryption=encryption)


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())
