"""Cloudflare R2 backend speaking the S3 API with Signature V4."""

import logging
from typing import Optional

import httpx

from ..constants import PRIMARY_BACKEND
from ..credentials import CredentialProvider
from ..models import CredentialSet
from ..security import RequestSigner, canonical_uri
from .base import (
    BackendNotConfiguredError,
    StorageBackend,
    TransferHttpError,
    TransferNetworkError,
    TransferOutcome,
    TransferSuccess,
    object_key,
)

logger = logging.getLogger(__name__)

# Statuses that usually mean the cached keys were rotated
AUTH_FAILURE_STATUSES = (401, 403)


class R2Backend(StorageBackend):
    """
    Primary backend.

    Every logical bucket is a key prefix inside one R2 bucket, so an object uploaded
    to ``posts`` at ``abc/1.jpg`` lives at ``{bucket_name}/posts/abc/1.jpg``.
    """

    name = PRIMARY_BACKEND

    def __init__(
        self,
        credential_provider: CredentialProvider,
        signer: RequestSigner,
        http_client: httpx.AsyncClient,
    ):
        super().__init__(http_client)
        self.credential_provider = credential_provider
        self.signer = signer

    async def is_configured(self) -> bool:
        credentials = await self.credential_provider.resolve()
        return credentials.is_complete

    def _request_path(self, credentials: CredentialSet, bucket: str, path: str) -> str:
        return f"/{credentials.bucket_name}/{object_key(bucket, path)}"

    def _url(self, credentials: CredentialSet, request_path: str) -> str:
        return f"{self.signer.endpoint_for(credentials)}{canonical_uri(request_path)}"

    async def _credentials(self) -> Optional[CredentialSet]:
        credentials = await self.credential_provider.resolve()
        if not credentials.is_complete:
            return None
        return credentials

    def _check_auth(self, outcome: TransferOutcome) -> TransferOutcome:
        if isinstance(outcome, TransferHttpError) and outcome.status_code in AUTH_FAILURE_STATUSES:
            self.credential_provider.invalidate()
        return outcome

    async def put(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str,
        timeout: float,
    ) -> TransferOutcome:
        """Upload bytes with a signed PUT. The payload hash covers the body."""
        credentials = await self._credentials()
        if credentials is None:
            return TransferNetworkError(BackendNotConfiguredError("R2 credentials are not configured"))

        request_path = self._request_path(credentials, bucket, path)
        headers = self.signer.sign(
            credentials,
            "PUT",
            request_path,
            {"Content-Type": content_type, "Content-Length": str(len(content))},
            body=content,
        )
        logger.info(f"[r2] PUT {object_key(bucket, path)} ({len(content)} bytes, {content_type})")
        outcome = await self._send(
            "PUT",
            self._url(credentials, request_path),
            timeout,
            headers=headers,
            content=content,
        )
        return self._check_auth(outcome)

    async def delete(self, bucket: str, path: str, timeout: float) -> TransferOutcome:
        """Delete an object. A missing object counts as deleted."""
        credentials = await self._credentials()
        if credentials is None:
            return TransferNetworkError(BackendNotConfiguredError("R2 credentials are not configured"))

        request_path = self._request_path(credentials, bucket, path)
        headers = self.signer.sign(credentials, "DELETE", request_path)
        outcome = await self._send("DELETE", self._url(credentials, request_path), timeout, headers=headers)
        if isinstance(outcome, TransferHttpError) and outcome.status_code == 404:
            logger.info(f"[r2] {object_key(bucket, path)} already absent")
            return TransferSuccess(status_code=404)
        return self._check_auth(outcome)

    async def head(self, bucket: str, path: str, timeout: float) -> TransferOutcome:
        """Check an object with a signed HEAD; 404 comes back as a TransferHttpError."""
        credentials = await self._credentials()
        if credentials is None:
            return TransferNetworkError(BackendNotConfiguredError("R2 credentials are not configured"))

        request_path = self._request_path(credentials, bucket, path)
        headers = self.signer.sign(credentials, "HEAD", request_path)
        outcome = await self._send("HEAD", self._url(credentials, request_path), timeout, headers=headers)
        return self._check_auth(outcome)

    async def presigned_put(self, bucket: str, path: str, expires_in: int = 3600) -> Optional[str]:
        """
        Generate a URL a client can PUT the object to directly.

        Args:
            bucket: Logical bucket
            path: Object path inside the bucket
            expires_in: URL lifetime in seconds

        Returns:
            The presigned URL, or None when R2 is not configured
        """
        credentials = await self._credentials()
        if credentials is None:
            return None
        return self.signer.presign(credentials, "PUT", self._request_path(credentials, bucket, path), expires_in)

    def serves_public_urls(self) -> bool:
        return self.credential_provider.peek().is_publicly_served

    def public_url(self, bucket: str, path: str) -> Optional[str]:
        credentials = self.credential_provider.peek()
        if not credentials.public_base_url:
            return None
        return f"{credentials.public_base_url.rstrip('/')}/{object_key(bucket, path)}"
