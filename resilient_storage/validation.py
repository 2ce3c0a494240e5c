"""Bucket-specific size and MIME type checks, run before any network call."""

from typing import Optional

from .constants import BUCKET_POLICIES, MB
from .models import UploadFile


def validate_upload(bucket: str, file: UploadFile, content_type: Optional[str] = None) -> Optional[str]:
    """
    Validate a file against the policy of its bucket.

    Args:
        bucket: Logical bucket name
        file: File to check
        content_type: Overrides ``file.mime_type`` for the type check

    Returns:
        An error message, or None when the file is acceptable
    """
    if not file.size:
        return "File is empty"

    policy = BUCKET_POLICIES.get(bucket)
    if policy is None:
        return None

    max_bytes, allowed_types = policy
    if file.size > max_bytes:
        return f"File size exceeds maximum allowed ({max_bytes // MB}MB)"

    mime_type = content_type or file.mime_type
    if mime_type and mime_type not in allowed_types:
        return f'File type "{mime_type}" is not allowed'

    return None
