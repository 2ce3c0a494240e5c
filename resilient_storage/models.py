"""Pydantic models for storage requests, results and component state."""

from enum import Enum
from typing import Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HALF_OPEN_MAX_PROBES,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_TIMEOUT_MS,
)


BackendRole = Literal["primary", "secondary"]


class ErrorKind(str, Enum):
    """Classification of a failed storage operation."""
    VALIDATION = "validation"
    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    CORS = "cors"
    UNKNOWN = "unknown"
    CONFIGURATION = "configuration"


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CredentialSet(BaseModel):
    """Resolved credentials for the S3-compatible backend."""
    model_config = ConfigDict(frozen=True)

    account_id: Optional[str] = Field(None, description="Cloudflare account identifier")
    access_key_id: Optional[str] = Field(None, description="Access key ID")
    secret_access_key: Optional[str] = Field(None, description="Secret access key")
    bucket_name: str = Field(..., description="Bucket holding every logical bucket as a prefix")
    public_base_url: str = Field("", description="Public base URL serving the bucket")

    @property
    def is_complete(self) -> bool:
        """Check if the set carries everything needed to sign requests."""
        return bool(self.account_id and self.access_key_id and self.secret_access_key)

    @property
    def is_publicly_served(self) -> bool:
        return self.is_complete and bool(self.public_base_url)


class RetryConfig(BaseModel):
    """Bounded retry configuration for a single backend."""
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(DEFAULT_BASE_DELAY_MS, ge=0, description="Base backoff delay in milliseconds")
    max_delay_ms: int = Field(DEFAULT_MAX_DELAY_MS, ge=0, description="Backoff cap in milliseconds")
    timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, gt=0, description="Timeout for a single attempt in milliseconds")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds."""
    failure_threshold: int = Field(DEFAULT_FAILURE_THRESHOLD, ge=1, description="Consecutive failures before opening")
    reset_timeout_ms: int = Field(DEFAULT_RESET_TIMEOUT_MS, ge=0, description="Cool-down before a half-open probe")
    half_open_max_probes: int = Field(DEFAULT_HALF_OPEN_MAX_PROBES, ge=1, description="Probes allowed while half-open")


class CircuitSnapshot(BaseModel):
    """Read-only view of one backend's circuit."""
    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: Optional[float] = None
    half_open_probes_used: int = 0
    total_failures: int = 0
    total_successes: int = 0


class ClassifiedError(BaseModel):
    """A failure after classification by the retry policy."""
    kind: ErrorKind
    retriable: bool
    message: str
    status_code: Optional[int] = None


class UploadFile(BaseModel):
    """Bytes to upload together with their declared size and MIME type."""
    content: bytes = Field(..., description="Raw file bytes")
    mime_type: str = Field("", description="Declared MIME type, may be empty")
    size: Optional[int] = Field(None, ge=0, description="Size in bytes, defaults to len(content)")

    @model_validator(mode="after")
    def _fill_size(self) -> "UploadFile":
        if self.size is None:
            self.size = len(self.content)
        return self


class UploadOptions(BaseModel):
    """Per-call upload overrides."""
    retry_config: Optional[RetryConfig] = None
    validate_file: bool = Field(True, description="Run the bucket policy check before any network call")
    deadline_ms: Optional[int] = Field(None, gt=0, description="Budget for the whole call, all retries included")
    content_type: Optional[str] = Field(None, description="Overrides the file's MIME type")


class UploadResult(BaseModel):
    """Successful upload."""
    path: str = Field(..., description="Object path, prefixed with the logical bucket")
    public_url: Optional[str] = Field(None, description="Public URL when the backend serves one")
    backend: BackendRole

    @property
    def success(self) -> bool:
        return True


class UploadError(BaseModel):
    """Failed upload, safe to show to an end user."""
    error_kind: ErrorKind
    message: str
    retriable: bool = False
    status_code: Optional[int] = None
    backend: Optional[BackendRole] = None

    @property
    def success(self) -> bool:
        return False


class DeleteResult(BaseModel):
    """Outcome of a dual-backend delete."""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class SignedUrlResult(BaseModel):
    """Signed URL or an error message."""
    signed_url: Optional[str] = None
    error: Optional[str] = None


class DirectUploadResult(BaseModel):
    """URL a client can upload to directly, bypassing this process."""
    url: Optional[str] = None
    method: str = "PUT"
    upload_headers: Dict[str, str] = Field(default_factory=dict)
    backend: Optional[BackendRole] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.url is not None
