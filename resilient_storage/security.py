"""AWS Signature Version 4 request signing and secret handling utilities."""

import hmac
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import quote

from .constants import (
    DEFAULT_R2_STORAGE_DOMAIN,
    MAX_PRESIGN_EXPIRES_SECONDS,
    R2_REGION,
    R2_SERVICE,
    SIGV4_ALGORITHM,
    SIGV4_TERMINATOR,
    UNSIGNED_PAYLOAD,
)
from .models import CredentialSet

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def sha256_hex(data: Union[bytes, str]) -> str:
    """Hex-encoded SHA-256 digest of bytes or UTF-8 text."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(
    secret_access_key: str,
    date_stamp: str,
    region: str = R2_REGION,
    service: str = R2_SERVICE,
) -> bytes:
    """
    Derive the scoped signing key.

    Four chained HMAC-SHA256 operations, each keyed with the previous digest:
    date stamp, region, service, then the terminator.

    Args:
        secret_access_key: The account secret
        date_stamp: UTC date formatted as YYYYMMDD
        region: Signing region
        service: Signing service

    Returns:
        The raw 32-byte signing key
    """
    k_date = hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, SIGV4_TERMINATOR)


def mask_secret(secret: Optional[str]) -> str:
    """Mask a secret for safe logging (first 6 and last 4 characters)."""
    if not secret:
        return "null"
    if len(secret) <= 12:
        return "***"
    return f"{secret[:6]}...{secret[-4:]} ({len(secret)} chars)"


def canonical_uri(path: str) -> str:
    """URI-encode an object path, keeping slashes."""
    if not path.startswith("/"):
        path = f"/{path}"
    return quote(path, safe="/~")


def format_timestamps(now: datetime) -> Tuple[str, str]:
    """Return (amz_date, date_stamp) from a single instant."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SignedRequest:
    """A request signed for one attempt. Never reused: the timestamp expires."""
    method: str
    canonical_uri: str
    headers: Dict[str, str]
    payload_hash: str
    canonical_request: str
    string_to_sign: str


class RequestSigner:
    """Signature V4 signer for the S3-compatible backend."""

    def __init__(
        self,
        region: str = R2_REGION,
        service: str = R2_SERVICE,
        storage_domain: str = DEFAULT_R2_STORAGE_DOMAIN,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the signer.

        Args:
            region: Signing region ("auto" for R2)
            service: Signing service
            storage_domain: Domain appended to the account id to form the host
            clock: Returns the current time; injectable for deterministic signatures
        """
        self.region = region
        self.service = service
        self.storage_domain = storage_domain
        self.clock = clock or _utc_now

    def host_for(self, credentials: CredentialSet) -> str:
        """Get the API host for an account."""
        return f"{credentials.account_id}.{self.storage_domain}"

    def endpoint_for(self, credentials: CredentialSet) -> str:
        return f"https://{self.host_for(credentials)}"

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/{SIGV4_TERMINATOR}"

    def _require_credentials(self, credentials: CredentialSet) -> None:
        if not credentials.is_complete:
            raise ValueError("Cannot sign a request with incomplete credentials")

    def sign_request(
        self,
        credentials: CredentialSet,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> SignedRequest:
        """
        Sign a request with an Authorization header.

        Args:
            credentials: Complete credential set
            method: HTTP method
            path: Object path, encoded here
            headers: Extra headers to sign, e.g. content-type; a "host" entry overrides the default
            body: Payload to hash; None signs the request as UNSIGNED-PAYLOAD

        Returns:
            SignedRequest with every canonical header plus Authorization
        """
        self._require_credentials(credentials)

        amz_date, date_stamp = format_timestamps(self.clock())
        uri = canonical_uri(path)
        payload_hash = sha256_hex(body) if body is not None else UNSIGNED_PAYLOAD

        canonical_headers: Dict[str, str] = {
            "host": self.host_for(credentials),
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        for name, value in (headers or {}).items():
            canonical_headers[name.lower()] = str(value).strip()

        names = sorted(canonical_headers)
        headers_block = "".join(f"{name}:{canonical_headers[name]}\n" for name in names)
        signed_headers = ";".join(names)

        canonical_request = "\n".join([
            method.upper(),
            uri,
            "",
            headers_block,
            signed_headers,
            payload_hash,
        ])

        scope = self.credential_scope(date_stamp)
        string_to_sign = "\n".join([
            SIGV4_ALGORITHM,
            amz_date,
            scope,
            sha256_hex(canonical_request),
        ])

        signing_key = derive_signing_key(
            credentials.secret_access_key, date_stamp, self.region, self.service
        )
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        signed = dict(canonical_headers)
        signed["Authorization"] = (
            f"{SIGV4_ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        logger.debug(f"Signed {method.upper()} {uri} (scope {scope}, headers {signed_headers})")

        return SignedRequest(
            method=method.upper(),
            canonical_uri=uri,
            headers=signed,
            payload_hash=payload_hash,
            canonical_request=canonical_request,
            string_to_sign=string_to_sign,
        )

    def sign(
        self,
        credentials: CredentialSet,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> Dict[str, str]:
        """Sign a request and return its headers."""
        return self.sign_request(credentials, method, path, headers, body).headers

    def presign(
        self,
        credentials: CredentialSet,
        method: str,
        path: str,
        expires_in: int = 3600,
        host: Optional[str] = None,
    ) -> str:
        """
        Generate a presigned URL using query-string signing.

        Only the host header is signed and the payload is UNSIGNED-PAYLOAD, so the
        URL can be used by any client holding the bytes.

        Args:
            credentials: Complete credential set
            method: HTTP method the URL is valid for
            path: Object path
            expires_in: Lifetime in seconds (1 to 7 days)
            host: Overrides the account host

        Returns:
            Absolute https URL including X-Amz-Signature
        """
        self._require_credentials(credentials)
        if not 1 <= expires_in <= MAX_PRESIGN_EXPIRES_SECONDS:
            raise ValueError(f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRES_SECONDS} seconds")

        amz_date, date_stamp = format_timestamps(self.clock())
        host = host or self.host_for(credentials)
        uri = canonical_uri(path)
        scope = self.credential_scope(date_stamp)

        params = {
            "X-Amz-Algorithm": SIGV4_ALGORITHM,
            "X-Amz-Credential": f"{credentials.access_key_id}/{scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(expires_in),
            "X-Amz-SignedHeaders": "host",
        }
        query = "&".join(
            f"{quote(key, safe='-_.~')}={quote(value, safe='-_.~')}"
            for key, value in sorted(params.items())
        )

        canonical_request = "\n".join([
            method.upper(),
            uri,
            query,
            f"host:{host}\n",
            "host",
            UNSIGNED_PAYLOAD,
        ])
        string_to_sign = "\n".join([
            SIGV4_ALGORITHM,
            amz_date,
            scope,
            sha256_hex(canonical_request),
        ])
        signing_key = derive_signing_key(
            credentials.secret_access_key, date_stamp, self.region, self.service
        )
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        logger.debug(f"Presigned {method.upper()} {uri} for {expires_in}s")
        return f"https://{host}{uri}?{query}&X-Amz-Signature={signature}"
