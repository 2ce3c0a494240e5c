"""Upload and delete orchestration across the primary and fallback backends."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    stop_any,
)

from .circuit_breaker import CircuitBreaker
from .constants import DEFAULT_CONTENT_TYPE
from .models import (
    BackendRole,
    ClassifiedError,
    DeleteResult,
    ErrorKind,
    RetryConfig,
    UploadError,
    UploadFile,
    UploadOptions,
    UploadResult,
)
from .retry_policy import STORAGE_NOT_CONFIGURED_MESSAGE, RetryPolicy, format_error_message
from .storage_services.base import StorageBackend, TransferOutcome, TransferSuccess, object_key
from .storage_services.r2 import R2Backend
from .validation import validate_upload

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Deadline:
    """Time budget shared by every attempt of one call."""

    def __init__(self, budget_seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires_at = None if budget_seconds is None else clock() + budget_seconds

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def clamp(self, seconds: float) -> float:
        remaining = self.remaining()
        return seconds if remaining is None else min(seconds, remaining)

    def share(self, fraction: float) -> "Deadline":
        """A child deadline holding a fraction of what is left."""
        remaining = self.remaining()
        if remaining is None:
            return self
        return Deadline(remaining * fraction, self.clock)


@dataclass
class UploadAttempt:
    """One iteration of the retry loop, kept only for the duration of a call."""
    backend: str
    attempt_number: int
    started_at: float
    outcome: TransferOutcome
    http_status: Optional[int] = None
    classified_error: Optional[ClassifiedError] = None

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, TransferSuccess)


class UploadOrchestrator:
    """
    Stores a file on the primary backend, falling back to the secondary.

    The circuit breaker is updated at most once per backend per call, after that
    backend's retry loop finishes, never per attempt.
    """

    def __init__(
        self,
        primary: StorageBackend,
        secondary: StorageBackend,
        circuit_breaker: CircuitBreaker,
        retry_policy: Optional[RetryPolicy] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the orchestrator.

        Args:
            primary: Preferred backend
            secondary: Fallback backend
            circuit_breaker: Shared breaker keyed by backend name
            retry_policy: Classification and backoff
            retry_config: Defaults, overridable per call
            sleep: Coroutine used between attempts; tests pass a no-op
            clock: Monotonic clock in seconds for deadlines
        """
        self.primary = primary
        self.secondary = secondary
        self.circuit_breaker = circuit_breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_config = retry_config or RetryConfig()
        self.sleep = sleep
        self.clock = clock

    async def upload(
        self,
        bucket: str,
        path: str,
        file: UploadFile,
        options: Optional[UploadOptions] = None,
    ) -> Union[UploadResult, UploadError]:
        """
        Upload a file.

        Args:
            bucket: Logical bucket, e.g. "posts"
            path: Object path inside the bucket
            file: Bytes plus size and MIME type
            options: Per-call overrides

        Returns:
            UploadResult on success, UploadError otherwise. Expected failures never raise.
        """
        if not path:
            raise ValueError("path must not be empty")

        options = options or UploadOptions()
        config = options.retry_config or self.retry_config
        content_type = options.content_type or file.mime_type or DEFAULT_CONTENT_TYPE

        if options.validate_file:
            problem = validate_upload(bucket, file, options.content_type)
            if problem:
                logger.info(f"Rejected upload to {object_key(bucket, path)}: {problem}")
                return UploadError(error_kind=ErrorKind.VALIDATION, message=problem, retriable=False)

        budget = options.deadline_ms / 1000.0 if options.deadline_ms else None
        deadline = Deadline(budget, self.clock)
        last_error: Optional[ClassifiedError] = None
        last_backend: Optional[BackendRole] = None

        secondary_ready = await self.secondary.is_configured()

        if not await self.primary.is_configured():
            logger.info(f"Primary backend '{self.primary.name}' not configured, using fallback")
        elif not self.circuit_breaker.allow_request(self.primary.name):
            logger.warning(f"Circuit for '{self.primary.name}' is open, skipping to fallback")
        else:
            phase = deadline.share(0.5) if secondary_ready else deadline
            try:
                attempt = await self._attempt_backend(
                    self.primary, bucket, path, file, content_type, config, phase
                )
            except BaseException:
                # Cancelled or crashed mid-attempt: no outcome, so the probe slot goes back
                self.circuit_breaker.release_probe(self.primary.name)
                raise
            if attempt.succeeded:
                self.circuit_breaker.record_success(self.primary.name)
                return self._result(self.primary, "primary", bucket, path, attempt)

            self.circuit_breaker.record_failure(self.primary.name)
            last_error = attempt.classified_error
            last_backend = "primary"
            logger.warning(
                f"Primary backend '{self.primary.name}' failed after {attempt.attempt_number} "
                f"attempt(s): {last_error.message if last_error else 'unknown'}"
            )

        if not secondary_ready:
            if last_error is None:
                logger.error("No storage backend is configured")
                return UploadError(
                    error_kind=ErrorKind.CONFIGURATION,
                    message=STORAGE_NOT_CONFIGURED_MESSAGE,
                    retriable=False,
                )
            return self._error(last_error, last_backend)

        if deadline.expired:
            logger.error(f"Deadline spent before fallback for {object_key(bucket, path)}")
            return self._error(last_error, last_backend)

        attempt = await self._attempt_backend(self.secondary, bucket, path, file, content_type, config, deadline)
        if attempt.succeeded:
            self.circuit_breaker.record_success(self.secondary.name)
            logger.info(f"Uploaded {object_key(bucket, path)} via fallback '{self.secondary.name}'")
            return self._result(self.secondary, "secondary", bucket, path, attempt)

        self.circuit_breaker.record_failure(self.secondary.name)
        logger.error(
            f"Upload of {object_key(bucket, path)} failed on every backend: "
            f"{attempt.classified_error.message if attempt.classified_error else 'unknown'}"
        )
        return self._error(attempt.classified_error or last_error, "secondary")

    def _result(
        self,
        backend: StorageBackend,
        role: BackendRole,
        bucket: str,
        path: str,
        attempt: UploadAttempt,
    ) -> UploadResult:
        return UploadResult(
            path=backend.uploaded_path(bucket, path, attempt.outcome),
            public_url=backend.public_url(bucket, path),
            backend=role,
        )

    def _error(self, classified: Optional[ClassifiedError], backend: Optional[BackendRole]) -> UploadError:
        return UploadError(
            error_kind=classified.kind if classified else ErrorKind.UNKNOWN,
            message=format_error_message(classified),
            retriable=classified.retriable if classified else False,
            status_code=classified.status_code if classified else None,
            backend=backend,
        )

    def _wait(self, config: RetryConfig, deadline: Deadline) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            delay = self.retry_policy.backoff_delay(retry_state.attempt_number - 1, config)
            return deadline.clamp(delay)
        return wait

    async def _attempt_backend(
        self,
        backend: StorageBackend,
        bucket: str,
        path: str,
        file: UploadFile,
        content_type: str,
        config: RetryConfig,
        deadline: Deadline,
    ) -> UploadAttempt:
        """Run the bounded retry loop against one backend and return the last attempt."""
        attempt_number = 0

        async def attempt_once() -> UploadAttempt:
            nonlocal attempt_number
            attempt_number += 1
            started_at = self.clock()
            timeout = deadline.clamp(config.timeout_ms / 1000.0)
            outcome = await backend.put(bucket, path, file.content, content_type, timeout=timeout)
            classified = self.retry_policy.classify_outcome(outcome)
            attempt = UploadAttempt(
                backend=backend.name,
                attempt_number=attempt_number,
                started_at=started_at,
                outcome=outcome,
                http_status=getattr(outcome, "status_code", None),
                classified_error=classified,
            )
            if classified is not None:
                logger.warning(
                    f"[{backend.name}] attempt {attempt_number}/{config.max_retries + 1} failed: "
                    f"{classified.kind.value} ({classified.message}), retriable={classified.retriable}"
                )
            return attempt

        def deadline_spent(retry_state: RetryCallState) -> bool:
            return deadline.expired

        retrying = AsyncRetrying(
            stop=stop_any(stop_after_attempt(config.max_retries + 1), deadline_spent),
            wait=self._wait(config, deadline),
            retry=retry_if_result(
                lambda attempt: attempt.classified_error is not None and attempt.classified_error.retriable
            ),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return await retrying(attempt_once)


class DeleteOrchestrator:
    """Deletes an object from every configured backend."""

    def __init__(self, primary: StorageBackend, secondary: StorageBackend, timeout_seconds: float):
        self.primary = primary
        self.secondary = secondary
        self.timeout_seconds = timeout_seconds
        self.retry_policy = RetryPolicy()

    async def _delete_from(self, backend: StorageBackend, bucket: str, path: str) -> Optional[str]:
        outcome = await backend.delete(bucket, path, timeout=self.timeout_seconds)
        classified = self.retry_policy.classify_outcome(outcome)
        if classified is None:
            logger.info(f"[{backend.name}] deleted {object_key(bucket, path)}")
            return None
        return f"{backend.name}: {classified.message}"

    async def delete_object(self, bucket: str, path: str) -> DeleteResult:
        """
        Delete an object from both backends.

        A failure on one backend is tolerated when the other succeeds; the leftover
        copy is logged. An error is returned only when every attempted delete failed.
        """
        backends: List[StorageBackend] = []
        for backend in (self.primary, self.secondary):
            if await backend.is_configured():
                backends.append(backend)

        if not backends:
            logger.error("Delete requested but no storage backend is configured")
            return DeleteResult(error="Storage is not configured")

        results: Tuple[Optional[str], ...] = tuple(
            await asyncio.gather(*(self._delete_from(backend, bucket, path) for backend in backends))
        )
        failures = [error for error in results if error is not None]

        if len(failures) == len(backends):
            message = "; ".join(failures)
            logger.error(f"Delete of {object_key(bucket, path)} failed everywhere: {message}")
            return DeleteResult(error=f"Failed to delete file: {message}")

        if failures:
            logger.warning(f"Partial delete of {object_key(bucket, path)}, leftover copy: {'; '.join(failures)}")
        return DeleteResult()


class PublicUrlResolver:
    """Builds public URLs without touching the network."""

    def __init__(self, primary: R2Backend, secondary: StorageBackend):
        self.primary = primary
        self.secondary = secondary

    def public_url(self, bucket: str, path: str) -> str:
        if self.primary.serves_public_urls():
            url = self.primary.public_url(bucket, path)
            if url:
                return url
        return self.secondary.public_url(bucket, path) or ""
