"""Storage client facade wiring credentials, signing, breaker and backends together."""

import asyncio
import logging
import random
import time
from typing import Callable, Dict, Optional, Union

import httpx

from .circuit_breaker import CircuitBreaker
from .credentials import CredentialProvider
from .env import Settings
from .models import (
    CircuitSnapshot,
    DeleteResult,
    DirectUploadResult,
    RetryConfig,
    SignedUrlResult,
    UploadError,
    UploadFile,
    UploadOptions,
    UploadResult,
)
from .orchestrator import DeleteOrchestrator, PublicUrlResolver, Sleep, UploadOrchestrator
from .retry_policy import RetryPolicy
from .security import RequestSigner
from .storage_services.base import TransferHttpError, TransferSuccess, object_key
from .storage_services.r2 import R2Backend
from .storage_services.supabase import SupabaseStorageBackend

logger = logging.getLogger(__name__)

DEFAULT_SIGNED_URL_EXPIRES_SECONDS = 3600


class StorageClient:
    """
    Entry point for the application: upload, delete and URL generation.

    Owns the shared HTTP client unless one was passed in. Use as an async context
    manager or call ``aclose()`` when done.
    """

    def __init__(
        self,
        primary: R2Backend,
        secondary: SupabaseStorageBackend,
        circuit_breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        http_client: Optional[httpx.AsyncClient] = None,
        owns_http_client: bool = False,
    ):
        self.primary = primary
        self.secondary = secondary
        self.circuit_breaker = circuit_breaker
        self.retry_config = retry_config or RetryConfig()
        self.http_client = http_client
        self.owns_http_client = owns_http_client

        self.uploader = UploadOrchestrator(
            primary,
            secondary,
            circuit_breaker,
            retry_policy=retry_policy,
            retry_config=self.retry_config,
            sleep=sleep,
            clock=clock,
        )
        self.deleter = DeleteOrchestrator(primary, secondary, self.request_timeout)
        self.url_resolver = PublicUrlResolver(primary, secondary)

    @property
    def request_timeout(self) -> float:
        return self.retry_config.timeout_ms / 1000.0

    async def __aenter__(self) -> "StorageClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self.http_client is not None and self.owns_http_client:
            await self.http_client.aclose()

    async def upload(
        self,
        bucket: str,
        path: str,
        file: UploadFile,
        options: Optional[UploadOptions] = None,
    ) -> Union[UploadResult, UploadError]:
        return await self.uploader.upload(bucket, path, file, options)

    async def delete_object(self, bucket: str, path: str) -> DeleteResult:
        return await self.deleter.delete_object(bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        return self.url_resolver.public_url(bucket, path)

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expires_in: int = DEFAULT_SIGNED_URL_EXPIRES_SECONDS,
    ) -> SignedUrlResult:
        """
        Create a time-limited download URL through the fallback backend.

        Args:
            bucket: Logical bucket
            path: Object path
            expires_in: Lifetime in seconds

        Returns:
            SignedUrlResult with either ``signed_url`` or ``error`` set
        """
        if not await self.secondary.is_configured():
            return SignedUrlResult(error="Storage is not configured")

        outcome = await self.secondary.create_signed_url(bucket, path, expires_in, timeout=self.request_timeout)
        if isinstance(outcome, TransferSuccess) and outcome.payload:
            return SignedUrlResult(signed_url=outcome.payload)

        logger.error(f"Failed to sign {object_key(bucket, path)}: {outcome}")
        return SignedUrlResult(error=_describe_failure(outcome))

    async def get_direct_upload_url(
        self,
        bucket: str,
        path: str,
        content_type: str,
        size: int,
        force_secondary: bool = False,
        expires_in: int = DEFAULT_SIGNED_URL_EXPIRES_SECONDS,
    ) -> DirectUploadResult:
        """
        Get a URL a client can upload to without streaming through this process.

        R2 is preferred when configured and its circuit allows a request; the
        fallback's signed upload URL is used otherwise or when forced.
        """
        if (
            not force_secondary
            and await self.primary.is_configured()
            and not self.circuit_breaker.is_open(self.primary.name)
        ):
            url = await self.primary.presigned_put(bucket, path, expires_in)
            if url:
                logger.info(f"Issued R2 direct upload URL for {object_key(bucket, path)} ({size} bytes)")
                return DirectUploadResult(
                    url=url,
                    method="PUT",
                    upload_headers={"Content-Type": content_type},
                    backend="primary",
                )

        if not await self.secondary.is_configured():
            return DirectUploadResult(error="Storage is not configured")

        outcome = await self.secondary.create_signed_upload_url(bucket, path, timeout=self.request_timeout)
        if isinstance(outcome, TransferSuccess) and outcome.payload:
            logger.info(f"Issued fallback direct upload URL for {object_key(bucket, path)} ({size} bytes)")
            return DirectUploadResult(
                url=outcome.payload,
                method="PUT",
                upload_headers={"Content-Type": content_type, "x-upsert": "true"},
                backend="secondary",
            )

        logger.error(f"Failed to create direct upload URL for {object_key(bucket, path)}: {outcome}")
        return DirectUploadResult(error=_describe_failure(outcome))

    async def exists(self, bucket: str, path: str) -> bool:
        """Check whether an object exists on the primary backend."""
        if not await self.primary.is_configured():
            return False
        outcome = await self.primary.head(bucket, path, timeout=self.request_timeout)
        return isinstance(outcome, TransferSuccess)

    def circuit_state(self) -> Dict[str, CircuitSnapshot]:
        return {
            name: self.circuit_breaker.snapshot(name)
            for name in (self.primary.name, self.secondary.name)
        }


def _describe_failure(outcome) -> str:
    if isinstance(outcome, TransferHttpError):
        return f"Storage returned {outcome.status_code}"
    if isinstance(outcome, TransferSuccess):
        return "Storage returned no URL"
    return f"Storage request failed: {type(outcome.cause).__name__}"


def build_storage_client(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> StorageClient:
    """
    Build a fully wired client from settings.

    Args:
        settings: Application settings
        http_client: Shared client; one is created (and owned) when omitted
        sleep: Coroutine used between retries
        rng: Random source for backoff jitter

    Returns:
        StorageClient
    """
    retry_config = settings.retry_config()
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=retry_config.timeout_ms / 1000.0)

    credential_provider = CredentialProvider(settings, http_client=http_client)
    signer = RequestSigner(storage_domain=settings.r2_storage_domain)
    primary = R2Backend(credential_provider, signer, http_client)
    secondary = SupabaseStorageBackend(settings.supabase_url, settings.supabase_service_role_key, http_client)

    logger.info(
        f"Storage client ready (environment={settings.environment}, "
        f"fallback={'on' if settings.supabase_configured else 'off'}, "
        f"max_retries={retry_config.max_retries})"
    )

    return StorageClient(
        primary,
        secondary,
        CircuitBreaker(settings.circuit_breaker_config()),
        retry_config=retry_config,
        retry_policy=RetryPolicy(rng),
        sleep=sleep,
        http_client=http_client,
        owns_http_client=owns_http_client,
    )
