"""
OAuth state (CSRF) management.

State tokens are 64 hex chars, bound to (user_id, provider), valid for
10 minutes and single use: validation consumes the entry whether or not
it matches.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from .store import ExpiringStore, InMemoryStore

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 10 * 60
STATE_TOKEN_BYTES = 32


@dataclass
class OAuthStateEntry:
    user_id: str
    provider: str
    expires_at: float


class OAuthStateManager:
    """Issues and validates anti-forgery OAuth state tokens."""

    def __init__(self, store: Optional[ExpiringStore] = None, ttl_seconds: int = STATE_TTL_SECONDS):
        self._store = store or InMemoryStore()
        self._ttl = ttl_seconds

    @property
    def store(self) -> ExpiringStore:
        return self._store

    def _now(self) -> float:
        return self._store.now()

    def generate_state(self, user_id: str, provider: str) -> str:
        """Create a state token for an authorize redirect."""
        self._store.sweep()

        token = secrets.token_hex(STATE_TOKEN_BYTES)
        expires_at = self._now() + self._ttl
        self._store.set(token, OAuthStateEntry(user_id, provider, expires_at), expires_at)
        return token

    def get_state_owner(self, token: str) -> Optional[str]:
        """User who requested an unexpired state, without consuming it."""
        if not token:
            return None
        entry: Optional[OAuthStateEntry] = self._store.get(token)
        return entry.user_id if entry else None

    def validate_state(self, token: str, user_id: str, provider: str) -> bool:
        """
        Validate and consume a state token.

        True only if the token exists, is unexpired, and was issued for this
        exact (user_id, provider). The entry is deleted either way.
        """
        if not token:
            return False

        entry: Optional[OAuthStateEntry] = self._store.get(token)
        self._store.delete(token)

        if entry is None:
            logger.warning(f"[OAUTH_STATE] Unknown or expired state for {provider}")
            return False

        if entry.user_id != user_id or entry.provider != provider:
            logger.warning(f"[OAUTH_STATE] State mismatch for {provider}")
            return False

        return True

    def cleanup_user_states(self, user_id: str) -> int:
        """Drop all outstanding states for a user."""
        removed = 0
        for key in self._store.keys():
            entry = self._store.get(key)
            if entry is not None and entry.user_id == user_id:
                self._store.delete(key)
                removed += 1
        return removed


# Singleton instance
_state_manager: Optional[OAuthStateManager] = None


def get_state_manager() -> OAuthStateManager:
    """Get the global OAuthStateManager instance."""
    global _state_manager
    if _state_manager is None:
        _state_manager = OAuthStateManager()
    return _state_manager
