"""Credential resolution for the S3-compatible backend with a time-boxed cache."""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import httpx

from .constants import (
    R2_SECRET_NAMES,
    SECRET_R2_ACCESS_KEY_ID,
    SECRET_R2_ACCOUNT_ID,
    SECRET_R2_BUCKET_NAME,
    SECRET_R2_PUBLIC_URL,
    SECRET_R2_SECRET_ACCESS_KEY,
)
from .env import Settings
from .models import CredentialSet
from .security import mask_secret

logger = logging.getLogger(__name__)


class SecretStoreError(Exception):
    """The remote secret store could not be read."""
    pass


class CredentialProvider:
    """
    Resolves R2 credentials from the environment (local) or the platform vault.

    Resolution never raises: when the vault is unreachable an unconfigured set is
    returned so callers fall back to the secondary backend instead of crashing.
    Only complete sets are cached.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.http_client = http_client
        self.ttl_seconds = settings.credential_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._cache: Optional[Tuple[CredentialSet, float]] = None
        self._last_complete: Optional[CredentialSet] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _unconfigured(self) -> CredentialSet:
        return CredentialSet(
            bucket_name=self.settings.r2_bucket_name,
            public_base_url=self.settings.r2_public_url,
        )

    def _from_settings(self) -> CredentialSet:
        return CredentialSet(
            account_id=self.settings.r2_account_id or None,
            access_key_id=self.settings.r2_access_key_id or None,
            secret_access_key=self.settings.r2_secret_access_key or None,
            bucket_name=self.settings.r2_bucket_name,
            public_base_url=self.settings.r2_public_url,
        )

    def _cached(self) -> Optional[CredentialSet]:
        entry = self._cache
        if entry is None:
            return None
        credentials, expires_at = entry
        if self.clock() >= expires_at:
            return None
        return credentials

    def _store(self, credentials: CredentialSet) -> None:
        self._cache = (credentials, self.clock() + self.ttl_seconds)
        self._last_complete = credentials
        logger.info(f"Cached R2 credentials for {self.ttl_seconds:.0f}s")

    def _refresh_lock(self) -> asyncio.Lock:
        # Locks bind to one event loop; the provider may outlive several
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def invalidate(self) -> None:
        """Drop the cached set so the next resolve() refetches."""
        self._cache = None
        logger.info("R2 credential cache invalidated")

    def peek(self) -> CredentialSet:
        """
        Get credentials without any network call.

        Returns the last complete set ever resolved, even past its TTL, so URLs stay
        stable between refreshes. Before the first resolve the settings are used.
        """
        return self._last_complete or self._from_settings()

    async def resolve(self) -> CredentialSet:
        """
        Resolve the current credential set.

        Returns:
            CredentialSet: complete when the backend is configured, otherwise with
            null account and key fields
        """
        cached = self._cached()
        if cached is not None:
            return cached

        if self.settings.is_local:
            credentials = self._from_settings()
            if credentials.is_complete:
                logger.info(
                    f"Using R2 credentials from environment: "
                    f"account={mask_secret(credentials.account_id)}, "
                    f"key={mask_secret(credentials.access_key_id)}"
                )
                self._store(credentials)
            else:
                logger.warning("R2 credentials incomplete in environment, primary backend disabled")
            return credentials

        async with self._refresh_lock():
            # Another caller may have refreshed while this one waited
            cached = self._cached()
            if cached is not None:
                return cached

            try:
                credentials = await self._fetch_from_vault()
            except SecretStoreError as e:
                logger.error(f"Failed to fetch R2 credentials from vault: {e}")
                return self._unconfigured()

            if credentials.is_complete:
                self._store(credentials)
            else:
                logger.warning("Vault returned incomplete R2 credentials, primary backend disabled")
            return credentials

    async def _fetch_from_vault(self) -> CredentialSet:
        """Fetch the R2 secrets in one RPC call."""
        if not self.settings.supabase_configured:
            raise SecretStoreError("SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not set")
        if self.http_client is None:
            raise SecretStoreError("No HTTP client available for vault access")

        service_key = self.settings.supabase_service_role_key
        url = f"{self.settings.supabase_url.rstrip('/')}/rest/v1/rpc/get_secrets"
        started = time.perf_counter()

        try:
            response = await self.http_client.post(
                url,
                json={"secret_names": list(R2_SECRET_NAMES)},
                headers={
                    "apikey": service_key,
                    "Authorization": f"Bearer {service_key}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SecretStoreError(f"get_secrets request failed: {e}") from e
        except ValueError as e:
            raise SecretStoreError(f"get_secrets returned invalid JSON: {e}") from e

        if not isinstance(data, list):
            raise SecretStoreError(f"get_secrets returned {type(data).__name__}, expected a list")

        secrets: Dict[str, str] = {
            item["name"]: item["value"]
            for item in data
            if isinstance(item, dict) and "name" in item and item.get("value") is not None
        }
        duration_ms = (time.perf_counter() - started) * 1000
        missing = [name for name in R2_SECRET_NAMES if name not in secrets]
        logger.info(
            f"Retrieved {len(secrets)} R2 secrets in {duration_ms:.0f}ms "
            f"(missing: {', '.join(missing) if missing else 'none'})"
        )

        credentials = CredentialSet(
            account_id=secrets.get(SECRET_R2_ACCOUNT_ID) or None,
            access_key_id=secrets.get(SECRET_R2_ACCESS_KEY_ID) or None,
            secret_access_key=secrets.get(SECRET_R2_SECRET_ACCESS_KEY) or None,
            bucket_name=secrets.get(SECRET_R2_BUCKET_NAME) or self.settings.r2_bucket_name,
            public_base_url=secrets.get(SECRET_R2_PUBLIC_URL) or self.settings.r2_public_url,
        )
        logger.info(
            f"R2 secret values: account={mask_secret(credentials.account_id)}, "
            f"key={mask_secret(credentials.access_key_id)}, "
            f"secret={mask_secret(credentials.secret_access_key)}"
        )
        return credentials
