"""
Provider credential capability.

Decryption happens in the database (get_decrypted_api_credentials RPC);
this service only receives the plaintext, caches it briefly in memory and
never writes it anywhere.
"""

import threading
import time
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, SecretStr

from config import get_supabase_client
from exceptions import CredentialError

logger = structlog.get_logger(__name__)

DECRYPT_RPC = "get_decrypted_api_credentials"
CACHE_TTL_SECONDS = 300


class ProviderCredentials(BaseModel):
    provider: str
    username: str
    password: SecretStr
    extra: dict[str, Any] = Field(default_factory=dict)


class CredentialService:
    """Read decrypted provider credentials."""

    def __init__(self):
        self.db = get_supabase_client()
        self._cache: dict[str, tuple[float, ProviderCredentials]] = {}
        self._lock = threading.Lock()

    def get_provider_credentials(self, provider: str) -> ProviderCredentials:
        """
        Get decrypted credentials for a feed provider.

        Args:
            provider: Provider key (e.g. "traveltek")

        Returns:
            ProviderCredentials

        Raises:
            CredentialError: Missing, incomplete or undecryptable credentials
        """
        with self._lock:
            cached = self._cache.get(provider)
            if cached and time.monotonic() - cached[0] < CACHE_TTL_SECONDS:
                return cached[1]

        try:
            result = self.db.rpc(DECRYPT_RPC, {"p_provider": provider}).execute()
        except Exception as e:
            logger.error("provider_credentials_decrypt_failed", provider=provider, error_type=type(e).__name__)
            raise CredentialError(provider, f"Could not decrypt credentials for {provider}: {e}")

        rows = result.data
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            raise CredentialError(provider, f"No active credentials stored for {provider}")

        row = dict(rows[0])
        username = row.pop("username", None)
        password = row.pop("password", None)
        extra = {**(row.pop("extra", None) or {}), **row}
        if not username or not password:
            raise CredentialError(provider, f"Stored credentials for {provider} are incomplete")

        credentials = ProviderCredentials(
            provider=provider,
            username=username,
            password=password,
            extra=extra,
        )

        with self._lock:
            self._cache[provider] = (time.monotonic(), credentials)

        logger.info("provider_credentials_loaded", provider=provider)
        return credentials

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


_service: Optional[CredentialService] = None


def get_credential_service() -> CredentialService:
    global _service
    if _service is None:
        _service = CredentialService()
    return _service
