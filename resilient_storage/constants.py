"""Application constants."""

# Upload retry configuration
DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_MS = 500
DEFAULT_MAX_DELAY_MS = 5000
DEFAULT_TIMEOUT_MS = 30000

# Circuit breaker configuration
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT_MS = 60000
DEFAULT_HALF_OPEN_MAX_PROBES = 1

# Credential cache
DEFAULT_CREDENTIAL_CACHE_TTL_SECONDS = 5 * 60

# Backend names, also used as circuit breaker keys
PRIMARY_BACKEND = "r2"
SECONDARY_BACKEND = "supabase"

# R2 defaults
DEFAULT_R2_BUCKET_NAME = "foodshare"
DEFAULT_R2_STORAGE_DOMAIN = "r2.cloudflarestorage.com"
R2_REGION = "auto"
R2_SERVICE = "s3"

# Signature V4
SIGV4_ALGORITHM = "AWS4-HMAC-SHA256"
SIGV4_TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
MAX_PRESIGN_EXPIRES_SECONDS = 7 * 24 * 60 * 60

# Secret names in the platform vault
SECRET_R2_ACCOUNT_ID = "R2_ACCOUNT_ID"
SECRET_R2_ACCESS_KEY_ID = "R2_ACCESS_KEY_ID"
SECRET_R2_SECRET_ACCESS_KEY = "R2_SECRET_ACCESS_KEY"
SECRET_R2_BUCKET_NAME = "R2_BUCKET_NAME"
SECRET_R2_PUBLIC_URL = "R2_PUBLIC_URL"
R2_SECRET_NAMES = (
    SECRET_R2_ACCOUNT_ID,
    SECRET_R2_ACCESS_KEY_ID,
    SECRET_R2_SECRET_ACCESS_KEY,
    SECRET_R2_BUCKET_NAME,
    SECRET_R2_PUBLIC_URL,
)

# HTTP statuses in the 4xx range that are worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

# Exception messages that indicate a browser blocked the request
CROSS_ORIGIN_MARKERS = ("failed to fetch", "cors")

# File validation
MB = 1024 * 1024

ALLOWED_IMAGE_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
)

ALLOWED_DOCUMENT_TYPES = (
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)

# bucket -> (max size in bytes, allowed MIME types)
BUCKET_POLICIES = {
    "posts": (5 * MB, ALLOWED_IMAGE_TYPES),
    "avatars": (2 * MB, ALLOWED_IMAGE_TYPES),
    "profiles": (2 * MB, ALLOWED_IMAGE_TYPES),
    "chat": (10 * MB, ALLOWED_IMAGE_TYPES + ALLOWED_DOCUMENT_TYPES),
    "documents": (10 * MB, ALLOWED_DOCUMENT_TYPES),
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"
