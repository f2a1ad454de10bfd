"""Core integration infrastructure."""

from .encryption import EncryptionService
from .errors import IntegrationError, IntegrationErrorCode
from .tokens import TokenManager
from .types import (
    IntegrationProvider,
    IntegrationStatus,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "EncryptionService",
    "IntegrationError",
    "IntegrationErrorCode",
    "TokenManager",
    "IntegrationProvider",
    "IntegrationStatus",
    "SyncResult",
    "SyncStatus",
]
