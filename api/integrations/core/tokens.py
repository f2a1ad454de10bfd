"""
Token storage and lifecycle.

Handles encrypted storage of OAuth tokens in `platform_connections`, one row
per (user_id, platform). Tokens are encrypted per user at the application
layer before they reach the database (see encryption.py) and are decrypted
only when a caller needs a usable access token.

Status transitions:
    active -> reauth_required   refresh impossible or failed (tokens cleared)
    active -> disconnected      user disconnected (tokens cleared)
    *      -> active            store_token after a successful OAuth exchange
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from .encryption import EncryptionService, get_encryption_service
from .errors import DecryptionError, MissingTokenError, ReauthRequiredError
from .types import IntegrationProvider, IntegrationStatus, OAuthTokens

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = "platform_connections"

# Treat tokens this close to expiry as already expired
EXPIRY_BUFFER_SECONDS = 60

RefreshCallback = Callable[[str], Awaitable[OAuthTokens]]


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a Supabase timestamp (ISO string) into an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _provider_value(provider) -> str:
    return provider.value if isinstance(provider, IntegrationProvider) else str(provider)


class TokenManager:
    """
    Encrypted CRUD over credential records, with refresh-on-demand.

    Usage:
        manager = TokenManager(db_client)
        manager.store_token(user_id, IntegrationProvider.GITHUB, tokens)
        access_token = await manager.get_valid_token(
            user_id, IntegrationProvider.CALENDAR,
            refresh_callback=lambda rt: oauth.refresh_access_token(provider, rt),
        )
    """

    def __init__(self, db_client=None, encryption: Optional[EncryptionService] = None):
        if db_client is None:
            from services.supabase import get_service_client
            db_client = get_service_client()
        self._db = db_client
        self._encryption = encryption or get_encryption_service()

    # =========================================================================
    # Row access
    # =========================================================================

    def _get_row(self, user_id: str, provider) -> Optional[dict]:
        result = (
            self._db.table(CONNECTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("platform", _provider_value(provider))
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    def _update_row(self, user_id: str, provider, fields: dict) -> None:
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        (
            self._db.table(CONNECTIONS_TABLE)
            .update(fields)
            .eq("user_id", user_id)
            .eq("platform", _provider_value(provider))
            .execute()
        )

    def _clear_tokens(self, user_id: str, provider, status: IntegrationStatus) -> None:
        self._update_row(user_id, provider, {
            "credentials_encrypted": None,
            "refresh_token_encrypted": None,
            "token_expires_at": None,
            "status": status.value,
        })

    # =========================================================================
    # Public API
    # =========================================================================

    def store_token(self, user_id: str, provider, tokens: OAuthTokens) -> None:
        """
        Encrypt and upsert a token set, marking the connection active.

        Silently overwrites any previous tokens for (user_id, provider).
        """
        provider_value = _provider_value(provider)
        now = datetime.now(timezone.utc)

        record = {
            "user_id": user_id,
            "platform": provider_value,
            "credentials_encrypted": self._encryption.encrypt(tokens.access_token, user_id),
            "refresh_token_encrypted": (
                self._encryption.encrypt(tokens.refresh_token, user_id)
                if tokens.refresh_token else None
            ),
            "token_expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
            "status": IntegrationStatus.ACTIVE.value,
            "metadata": tokens.metadata or {},
            "updated_at": now.isoformat(),
        }

        self._db.table(CONNECTIONS_TABLE).upsert(
            record,
            on_conflict="user_id,platform"
        ).execute()

        logger.info(f"[TOKENS] Stored {provider_value} credentials for user {user_id[:8]}")

    def get_token(self, user_id: str, provider) -> Optional[OAuthTokens]:
        """
        Decrypt the stored token set.

        Returns None if never connected, disconnected, or awaiting reauth.

        Raises:
            DecryptionError: If the stored blob cannot be decrypted
        """
        row = self._get_row(user_id, provider)
        if not row or row.get("status") != IntegrationStatus.ACTIVE.value:
            return None
        if not row.get("credentials_encrypted"):
            return None

        refresh_blob = row.get("refresh_token_encrypted")
        return OAuthTokens(
            access_token=self._encryption.decrypt(row["credentials_encrypted"], user_id),
            refresh_token=self._encryption.decrypt(refresh_blob, user_id) if refresh_blob else None,
            expires_at=parse_timestamp(row.get("token_expires_at")),
            metadata=row.get("metadata") or {},
        )

    async def get_valid_token(
        self,
        user_id: str,
        provider,
        refresh_callback: Optional[RefreshCallback] = None,
    ) -> str:
        """
        Return a usable access token, refreshing it if expired.

        Raises:
            MissingTokenError: No active credential for this provider
            ReauthRequiredError: Expired and cannot be refreshed. The
                credential's tokens are cleared and its status becomes
                reauth_required before this is raised.
        """
        provider_value = _provider_value(provider)
        row = self._get_row(user_id, provider)

        if row and row.get("status") == IntegrationStatus.REAUTH_REQUIRED.value:
            raise ReauthRequiredError(provider_value)

        try:
            tokens = self.get_token(user_id, provider)
        except DecryptionError:
            logger.error(f"[TOKENS] Stored {provider_value} token could not be decrypted")
            self._clear_tokens(user_id, provider, IntegrationStatus.REAUTH_REQUIRED)
            raise ReauthRequiredError(provider_value)

        if tokens is None:
            raise MissingTokenError(provider_value)

        if not self._is_expired(tokens.expires_at):
            return tokens.access_token

        if not tokens.refresh_token or refresh_callback is None:
            logger.warning(f"[TOKENS] {provider_value} token expired with no way to refresh")
            self._clear_tokens(user_id, provider, IntegrationStatus.REAUTH_REQUIRED)
            raise ReauthRequiredError(provider_value)

        try:
            refreshed = await refresh_callback(tokens.refresh_token)
        except Exception as e:
            logger.warning(f"[TOKENS] {provider_value} refresh failed: {e}")
            self._clear_tokens(user_id, provider, IntegrationStatus.REAUTH_REQUIRED)
            raise ReauthRequiredError(provider_value) from e

        if not refreshed.refresh_token:
            refreshed.refresh_token = tokens.refresh_token
        if not refreshed.metadata:
            refreshed.metadata = tokens.metadata

        self.store_token(user_id, provider, refreshed)
        logger.info(f"[TOKENS] Refreshed {provider_value} token for user {user_id[:8]}")
        return refreshed.access_token

    def delete_token(self, user_id: str, provider) -> None:
        """Clear token fields and mark the connection disconnected."""
        self._clear_tokens(user_id, provider, IntegrationStatus.DISCONNECTED)
        logger.info(f"[TOKENS] Deleted {_provider_value(provider)} credentials for user {user_id[:8]}")

    def is_connected(self, user_id: str, provider) -> bool:
        row = self._get_row(user_id, provider)
        return bool(
            row
            and row.get("status") == IntegrationStatus.ACTIVE.value
            and row.get("credentials_encrypted")
        )

    def get_connection_status(self, user_id: str, provider) -> Optional[IntegrationStatus]:
        row = self._get_row(user_id, provider)
        if not row or not row.get("status"):
            return None
        return IntegrationStatus(row["status"])

    def get_connected_providers(self, user_id: str) -> list[IntegrationProvider]:
        return self._providers_with_status(user_id, IntegrationStatus.ACTIVE)

    def get_reauth_providers(self, user_id: str) -> list[IntegrationProvider]:
        return self._providers_with_status(user_id, IntegrationStatus.REAUTH_REQUIRED)

    def _providers_with_status(self, user_id: str, status: IntegrationStatus) -> list[IntegrationProvider]:
        result = (
            self._db.table(CONNECTIONS_TABLE)
            .select("platform")
            .eq("user_id", user_id)
            .eq("status", status.value)
            .execute()
        )
        known = {p.value for p in IntegrationProvider}
        return [
            IntegrationProvider(row["platform"])
            for row in (result.data or [])
            if row.get("platform") in known
        ]

    def get_active_user_ids(self, provider) -> list[str]:
        """Users with an active credential for a provider (scheduled sync)."""
        result = (
            self._db.table(CONNECTIONS_TABLE)
            .select("user_id")
            .eq("platform", _provider_value(provider))
            .eq("status", IntegrationStatus.ACTIVE.value)
            .execute()
        )
        return sorted({row["user_id"] for row in (result.data or [])})

    def get_token_expiry(self, user_id: str, provider) -> Optional[datetime]:
        row = self._get_row(user_id, provider)
        if not row:
            return None
        return parse_timestamp(row.get("token_expires_at"))

    def get_last_sync(self, user_id: str, provider) -> Optional[datetime]:
        row = self._get_row(user_id, provider)
        if not row:
            return None
        return parse_timestamp(row.get("last_synced_at"))

    def update_last_sync(self, user_id: str, provider, synced_at: Optional[datetime] = None) -> None:
        synced_at = synced_at or datetime.now(timezone.utc)
        self._update_row(user_id, provider, {"last_synced_at": synced_at.isoformat()})

    @staticmethod
    def _is_expired(expires_at: Optional[datetime]) -> bool:
        if expires_at is None:
            return False
        buffer = timedelta(seconds=EXPIRY_BUFFER_SECONDS)
        return expires_at <= datetime.now(timezone.utc) + buffer


# Singleton instance
_token_manager: Optional[TokenManager] = None


def get_token_manager() -> TokenManager:
    """Get the global TokenManager instance."""
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenManager()
    return _token_manager
