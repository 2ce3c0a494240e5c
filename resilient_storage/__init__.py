from .circuit_breaker import CircuitBreaker
from .client import StorageClient, build_storage_client
from .credentials import CredentialProvider, SecretStoreError
from .env import Settings
from .models import (
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
    ClassifiedError,
    CredentialSet,
    DeleteResult,
    DirectUploadResult,
    ErrorKind,
    RetryConfig,
    SignedUrlResult,
    UploadError,
    UploadFile,
    UploadOptions,
    UploadResult,
)
from .orchestrator import DeleteOrchestrator, PublicUrlResolver, UploadOrchestrator
from .retry_policy import RetryPolicy, format_error_message
from .security import RequestSigner, mask_secret
from .storage_services import (
    CrossOriginError,
    R2Backend,
    StorageBackend,
    SupabaseStorageBackend,
    TransferHttpError,
    TransferNetworkError,
    TransferSuccess,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitSnapshot",
    "CircuitState",
    "ClassifiedError",
    "CredentialProvider",
    "CredentialSet",
    "CrossOriginError",
    "DeleteOrchestrator",
    "DeleteResult",
    "DirectUploadResult",
    "ErrorKind",
    "PublicUrlResolver",
    "R2Backend",
    "RequestSigner",
    "RetryConfig",
    "RetryPolicy",
    "SecretStoreError",
    "Settings",
    "SignedUrlResult",
    "StorageBackend",
    "StorageClient",
    "SupabaseStorageBackend",
    "TransferHttpError",
    "TransferNetworkError",
    "TransferSuccess",
    "UploadError",
    "UploadFile",
    "UploadOptions",
    "UploadOrchestrator",
    "UploadResult",
    "build_storage_client",
    "format_error_message",
    "mask_secret",
]
