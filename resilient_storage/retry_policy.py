"""Error classification and backoff computation for storage transfers."""

import asyncio
import logging
import random
from typing import Any, Optional

import httpx

from .constants import CROSS_ORIGIN_MARKERS, RETRYABLE_CLIENT_STATUSES
from .models import ClassifiedError, ErrorKind, RetryConfig
from .storage_services.base import (
    BackendNotConfiguredError,
    CrossOriginError,
    TransferHttpError,
    TransferNetworkError,
    TransferOutcome,
    TransferSuccess,
)

logger = logging.getLogger(__name__)

NETWORK_EXCEPTIONS = (
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

GENERIC_ERROR_MESSAGE = "Upload failed, please try again."
STORAGE_NOT_CONFIGURED_MESSAGE = "Storage is not configured. Please try again later."


def _is_cross_origin(error: Optional[BaseException], status_code: Optional[int]) -> bool:
    if isinstance(error, CrossOriginError):
        return True
    if error is None or status_code is not None:
        return False
    # Transport errors quote hostnames and URLs, so their text is not a reliable marker
    if isinstance(error, NETWORK_EXCEPTIONS):
        return False
    message = str(error).lower()
    return any(marker in message for marker in CROSS_ORIGIN_MARKERS)


class RetryPolicy:
    """Decides whether a failed transfer is worth repeating, and when."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def classify(
        self,
        error: Optional[BaseException] = None,
        response: Optional[Any] = None,
    ) -> ClassifiedError:
        """
        Classify a failure.

        Cross-origin failures win over everything else. Otherwise network errors and
        5xx responses are retriable, 408 and 429 are retriable client errors, other
        4xx are terminal and anything unrecognised is terminal.

        Args:
            error: Exception raised by the transport, if any
            response: Object exposing ``status_code`` (an httpx.Response or TransferHttpError)

        Returns:
            ClassifiedError
        """
        status_code = getattr(response, "status_code", None)

        if _is_cross_origin(error, status_code):
            return ClassifiedError(
                kind=ErrorKind.CORS,
                retriable=False,
                message=f"Request blocked by cross-origin policy: {error}",
                status_code=status_code,
            )

        if isinstance(error, NETWORK_EXCEPTIONS):
            if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
                message = "Request timed out"
            else:
                message = f"Network error: {type(error).__name__}: {error}"
            return ClassifiedError(kind=ErrorKind.NETWORK, retriable=True, message=message)

        if isinstance(error, BackendNotConfiguredError):
            return ClassifiedError(kind=ErrorKind.CONFIGURATION, retriable=False, message=str(error))

        if status_code is not None:
            if status_code >= 500:
                return ClassifiedError(
                    kind=ErrorKind.SERVER,
                    retriable=True,
                    message=f"Server error: {status_code}",
                    status_code=status_code,
                )
            if 400 <= status_code < 500:
                return ClassifiedError(
                    kind=ErrorKind.CLIENT,
                    retriable=status_code in RETRYABLE_CLIENT_STATUSES,
                    message=f"Client error: {status_code}",
                    status_code=status_code,
                )

        message = f"{type(error).__name__}: {error}" if error is not None else "Unknown error"
        return ClassifiedError(kind=ErrorKind.UNKNOWN, retriable=False, message=message, status_code=status_code)

    def classify_outcome(self, outcome: TransferOutcome) -> Optional[ClassifiedError]:
        """Classify a transfer outcome; None for a success."""
        if isinstance(outcome, TransferSuccess):
            return None
        if isinstance(outcome, TransferHttpError):
            return self.classify(response=outcome)
        if isinstance(outcome, TransferNetworkError):
            return self.classify(error=outcome.cause)
        raise TypeError(f"Unexpected transfer outcome: {outcome!r}")

    def backoff_delay(self, attempt_index: int, config: RetryConfig) -> float:
        """
        Delay before the next attempt, in seconds.

        ``min(max_delay, base_delay * 2^attempt_index)`` plus uniform jitter up to
        ``base_delay``.
        """
        exponential = min(config.max_delay_ms, config.base_delay_ms * (2 ** attempt_index))
        jitter = self.rng.uniform(0, config.base_delay_ms)
        return (exponential + jitter) / 1000.0


def format_error_message(classified: Optional[ClassifiedError]) -> str:
    """Turn a classified error into a short message for end users."""
    if classified is None:
        return GENERIC_ERROR_MESSAGE

    if classified.kind == ErrorKind.CORS:
        return "Upload blocked by security policy. Please try again."
    if classified.kind == ErrorKind.NETWORK:
        return "Network connection issue. Please check your internet and try again."
    if classified.kind == ErrorKind.SERVER:
        return "Server is temporarily unavailable. Please try again in a moment."
    if classified.kind == ErrorKind.CLIENT:
        if classified.status_code == 413:
            return "File is too large. Please use a smaller file."
        if classified.status_code == 429:
            return "Too many requests. Please wait a moment and try again."
        return "Upload failed. Please check your file and try again."
    if classified.kind == ErrorKind.CONFIGURATION:
        return STORAGE_NOT_CONFIGURED_MESSAGE
    return GENERIC_ERROR_MESSAGE
