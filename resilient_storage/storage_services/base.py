"""Storage backend interface and the transfer outcome union."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx

logger = logging.getLogger(__name__)


class CrossOriginError(Exception):
    """The request was blocked by a browser same-origin policy."""
    pass


class BackendNotConfiguredError(Exception):
    """The backend has no usable credentials."""
    pass


@dataclass(frozen=True)
class TransferSuccess:
    status_code: int = 200
    payload: Any = None


@dataclass(frozen=True)
class TransferHttpError:
    status_code: int
    body: str = ""


@dataclass(frozen=True)
class TransferNetworkError:
    cause: BaseException


TransferOutcome = Union[TransferSuccess, TransferHttpError, TransferNetworkError]


def object_key(bucket: str, path: str) -> str:
    """Key of an object inside the shared namespace: the logical bucket is a prefix."""
    return f"{bucket}/{path.lstrip('/')}"


class StorageBackend(ABC):
    """Abstract object store."""

    name: str = ""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    @abstractmethod
    async def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def put(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str,
        timeout: float,
    ) -> TransferOutcome:
        pass

    @abstractmethod
    async def delete(self, bucket: str, path: str, timeout: float) -> TransferOutcome:
        pass

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> Optional[str]:
        pass

    def uploaded_path(self, bucket: str, path: str, outcome: TransferSuccess) -> str:
        return object_key(bucket, path)

    async def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> TransferOutcome:
        """
        Issue exactly one HTTP call bounded by a timeout.

        Cancellation of the calling task is never swallowed; every other transport
        failure becomes a TransferNetworkError.
        """
        try:
            response = await asyncio.wait_for(
                self.http_client.request(method, url, **kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"[{self.name}] {method} timed out after {timeout:.2f}s")
            return TransferNetworkError(e)
        except (httpx.HTTPError, CrossOriginError) as e:
            logger.warning(f"[{self.name}] {method} failed: {type(e).__name__}: {e}")
            return TransferNetworkError(e)

        if response.is_success:
            return TransferSuccess(status_code=response.status_code, payload=_json_or_none(response))

        logger.warning(f"[{self.name}] {method} returned {response.status_code}: {response.text[:200]}")
        return TransferHttpError(status_code=response.status_code, body=response.text)


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if "json" not in response.headers.get("content-type", ""):
        return None
    try:
        return response.json()
    except ValueError:
        return None
