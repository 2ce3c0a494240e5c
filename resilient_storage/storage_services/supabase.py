"""Supabase Storage backend, used as the fallback."""

import logging
from typing import Dict, Optional
from urllib.parse import quote

import httpx

from ..constants import SECONDARY_BACKEND
from .base import StorageBackend, TransferOutcome, TransferSuccess, object_key

logger = logging.getLogger(__name__)


class SupabaseStorageBackend(StorageBackend):
    """Secondary backend authenticated with the service role key."""

    name = SECONDARY_BACKEND

    def __init__(
        self,
        supabase_url: Optional[str],
        service_role_key: Optional[str],
        http_client: httpx.AsyncClient,
    ):
        super().__init__(http_client)
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.service_role_key = service_role_key

    @property
    def storage_url(self) -> str:
        return f"{self.supabase_url}/storage/v1"

    async def is_configured(self) -> bool:
        return bool(self.supabase_url and self.service_role_key)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_role_key or "",
            "Authorization": f"Bearer {self.service_role_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _object_url(self, prefix: str, bucket: str, path: str) -> str:
        return f"{self.storage_url}/{prefix}/{bucket}/{quote(path.lstrip('/'), safe='/')}"

    async def put(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str,
        timeout: float,
    ) -> TransferOutcome:
        logger.info(f"[supabase] upload {object_key(bucket, path)} ({len(content)} bytes, {content_type})")
        return await self._send(
            "POST",
            self._object_url("object", bucket, path),
            timeout,
            headers=self._headers({"Content-Type": content_type, "x-upsert": "true"}),
            content=content,
        )

    async def delete(self, bucket: str, path: str, timeout: float) -> TransferOutcome:
        return await self._send(
            "DELETE",
            f"{self.storage_url}/object/{bucket}",
            timeout,
            headers=self._headers(),
            json={"prefixes": [path]},
        )

    def uploaded_path(self, bucket: str, path: str, outcome: TransferSuccess) -> str:
        # Storage answers with {"Key": "<bucket>/<path>"}
        if isinstance(outcome.payload, dict) and outcome.payload.get("Key"):
            return outcome.payload["Key"]
        return object_key(bucket, path)

    def public_url(self, bucket: str, path: str) -> Optional[str]:
        if not self.supabase_url:
            return None
        return self._object_url("object/public", bucket, path)

    async def create_signed_url(self, bucket: str, path: str, expires_in: int, timeout: float) -> TransferOutcome:
        """
        Create a time-limited download URL.

        Returns:
            TransferSuccess whose payload is the absolute signed URL, or the failure
        """
        outcome = await self._send(
            "POST",
            self._object_url("object/sign", bucket, path),
            timeout,
            headers=self._headers(),
            json={"expiresIn": expires_in},
        )
        return self._absolute(outcome, "signedURL")

    async def create_signed_upload_url(self, bucket: str, path: str, timeout: float) -> TransferOutcome:
        """Create a one-shot upload URL; the payload of a success is the absolute URL."""
        outcome = await self._send(
            "POST",
            self._object_url("object/upload/sign", bucket, path),
            timeout,
            headers=self._headers(),
        )
        return self._absolute(outcome, "url")

    def _absolute(self, outcome: TransferOutcome, field: str) -> TransferOutcome:
        if not isinstance(outcome, TransferSuccess):
            return outcome
        relative = outcome.payload.get(field) if isinstance(outcome.payload, dict) else None
        if not relative:
            logger.warning(f"[supabase] response carried no {field}")
            return TransferSuccess(status_code=outcome.status_code, payload=None)
        if relative.startswith("http"):
            return TransferSuccess(status_code=outcome.status_code, payload=relative)
        return TransferSuccess(
            status_code=outcome.status_code,
            payload=f"{self.storage_url}/{relative.lstrip('/')}",
        )
