from .base import (
    BackendNotConfiguredError,
    CrossOriginError,
    StorageBackend,
    TransferHttpError,
    TransferNetworkError,
    TransferOutcome,
    TransferSuccess,
    object_key,
)
from .r2 import R2Backend
from .supabase import SupabaseStorageBackend

__all__ = [
    "BackendNotConfiguredError",
    "CrossOriginError",
    "R2Backend",
    "StorageBackend",
    "SupabaseStorageBackend",
    "TransferHttpError",
    "TransferNetworkError",
    "TransferOutcome",
    "TransferSuccess",
    "object_key",
]
